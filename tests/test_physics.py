"""
Cloth Physics Tests — mesh construction, Verlet step, relaxation, deformation.
"""

import sys
import os
import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import physics
from physics import (
    ClothMesh, ClothSolver, Particle, Spring, InvalidConfiguration,
    GROUND_Y, DAMPING, STIFFNESS,
)


# ── Helpers ──────────────────────────────────────────────

DT = 1.0 / 60.0


def expected_spring_count(cols: int, rows: int) -> int:
    structural = (rows + 1) * cols + (cols + 1) * rows
    shear = 2 * cols * rows
    bending = (rows + 1) * (cols - 1) + (rows - 1) * (cols + 1)
    return structural + shear + bending


def single_spring_mesh(rest_pinned_a: bool = False) -> ClothMesh:
    """A 1x1 mesh whose only constraint is the top edge spring (0 → 1)."""
    mesh = ClothMesh(1.0, 1.0, 1, 1, pin_top=False)
    mesh.springs = [Spring(0, 1, 1.0)]
    mesh.particles[0].pinned = rest_pinned_a
    return mesh


# ── Mesh construction ────────────────────────────────────

class TestClothMesh:

    def test_particle_count(self):
        mesh = ClothMesh(2.0, 1.0, 6, 4)
        assert len(mesh.particles) == 7 * 5

    def test_grid_is_centered_with_row_zero_on_top(self):
        mesh = ClothMesh(2.0, 1.0, 4, 2)
        pos = mesh.positions()
        assert pos.shape == (15, 3)
        np.testing.assert_allclose(pos[0], [-1.0, 0.5, 0.0])
        np.testing.assert_allclose(pos[-1], [1.0, -0.5, 0.0])
        np.testing.assert_allclose(pos.mean(axis=0), [0.0, 0.0, 0.0], atol=1e-12)

    def test_pin_pattern_top_row_every_fifth(self):
        mesh = ClothMesh(2.0, 2.0, 12, 3)
        assert mesh.pinned_indices() == [0, 5, 10]

    def test_unpinned_mesh(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10, pin_top=False)
        assert mesh.pinned_indices() == []

    @pytest.mark.parametrize("cols,rows", [(1, 1), (2, 1), (10, 10), (30, 20)])
    def test_spring_count_is_deterministic(self, cols, rows):
        mesh = ClothMesh(2.0, 2.0, cols, rows)
        assert len(mesh.springs) == expected_spring_count(cols, rows)
        assert len(ClothMesh(2.0, 2.0, cols, rows).springs) == len(mesh.springs)

    def test_spring_families(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        kinds = [s.kind for s in mesh.springs]
        assert kinds.count("structural") == 220
        assert kinds.count("shear") == 200
        assert kinds.count("bending") == 198

    def test_rest_length_matches_rest_distance(self):
        mesh = ClothMesh(3.0, 1.5, 6, 5)
        for s in mesh.springs:
            d = np.linalg.norm(mesh.particles[s.b].original_pos - mesh.particles[s.a].original_pos)
            assert s.rest == pytest.approx(d)

    def test_rest_lengths_per_family(self):
        mesh = ClothMesh(2.0, 1.0, 4, 4)   # cell 0.5 x 0.25
        rests = {s.kind: set() for s in mesh.springs}
        for s in mesh.springs:
            rests[s.kind].add(round(s.rest, 9))
        assert rests["structural"] == {0.5, 0.25}
        assert rests["shear"] == {round(np.hypot(0.5, 0.25), 9)}
        assert rests["bending"] == {1.0, 0.5}

    def test_original_position_is_read_only(self):
        mesh = ClothMesh(1.0, 1.0, 2, 2)
        with pytest.raises(ValueError):
            mesh.particles[0].original_pos[0] = 5.0

    @pytest.mark.parametrize("args", [
        (0.0, 1.0, 4, 4),
        (1.0, -1.0, 4, 4),
        (1.0, 1.0, 0, 4),
        (1.0, 1.0, 4, 0),
        (1.0, 1.0, 2.5, 4),
        (float("nan"), 1.0, 4, 4),
        (1.0, float("nan"), 4, 4),
    ])
    def test_invalid_construction(self, args):
        with pytest.raises(InvalidConfiguration):
            ClothMesh(*args)

    def test_invalid_configuration_is_value_error(self):
        assert issubclass(InvalidConfiguration, ValueError)


class TestGridLookup:

    def test_particle_index(self):
        mesh = ClothMesh(2.0, 2.0, 4, 3)
        assert mesh.particle_index(0, 0) == 0
        assert mesh.particle_index(4, 0) == 4
        assert mesh.particle_index(2, 1) == 7
        assert mesh.particle_index(4, 3) == 19

    @pytest.mark.parametrize("col,row", [(-1, 0), (5, 0), (0, -1), (0, 4)])
    def test_particle_index_out_of_range(self, col, row):
        mesh = ClothMesh(2.0, 2.0, 4, 3)
        assert mesh.particle_index(col, row) is None

    def test_grid_coords(self):
        mesh = ClothMesh(2.0, 2.0, 4, 3)
        assert mesh.grid_coords(7) == (2, 1)
        assert mesh.grid_coords(-1) is None
        assert mesh.grid_coords(20) is None
        for i in range(len(mesh.particles)):
            assert mesh.particle_index(*mesh.grid_coords(i)) == i


# ── Reset and wind ───────────────────────────────────────

class TestResetAndWind:

    def test_reset_restores_exact_rest_state(self):
        mesh = ClothMesh(2.0, 2.0, 10, 8)
        solver = ClothSolver(mesh)
        mesh.add_wind([1.0, 0.0, 3.0])
        for _ in range(20):
            solver.step(DT)
        solver.deform_area(mesh.particle_index(5, 5), [0.0, 0.2, 0.1])

        mesh.reset()
        for p in mesh.particles:
            assert np.array_equal(p.pos, p.original_pos)
            assert np.array_equal(p.prev, p.original_pos)
            assert np.array_equal(p.acc, np.zeros(3))
        assert np.array_equal(mesh.wind_force, np.zeros(3))

    def test_reset_is_idempotent(self):
        mesh = ClothMesh(2.0, 2.0, 6, 6)
        solver = ClothSolver(mesh)
        for _ in range(5):
            solver.step(DT)
        mesh.reset()
        first = mesh.positions()
        mesh.reset()
        assert np.array_equal(first, mesh.positions())

    def test_reset_does_not_alias_original(self):
        mesh = ClothMesh(2.0, 2.0, 2, 2)
        mesh.reset()
        mesh.particles[4].pos[0] += 1.0
        assert mesh.particles[4].original_pos[0] == 0.0

    def test_add_wind_accumulates(self):
        mesh = ClothMesh(1.0, 1.0, 2, 2)
        mesh.add_wind([0.0, 0.0, 2.0])
        mesh.add_wind([1.0, 0.0, 2.0])
        np.testing.assert_allclose(mesh.wind_force, [1.0, 0.0, 4.0])

    def test_wind_enters_acceleration_then_decays(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        mesh.add_wind([0.0, 0.0, 2.0])
        solver.step(DT)
        for p in mesh.particles:
            if not p.pinned:
                assert p.acc[2] == 2.0
                assert p.acc[1] == pytest.approx(-9.81)
        np.testing.assert_allclose(mesh.wind_force, [0.0, 0.0, 1.9])

    def test_wind_decays_geometrically(self):
        mesh = ClothMesh(1.0, 1.0, 2, 2)
        solver = ClothSolver(mesh)
        mesh.add_wind([0.0, 0.0, 2.0])
        for _ in range(10):
            solver.step(DT)
        assert mesh.wind_force[2] == pytest.approx(2.0 * 0.95 ** 10)


# ── Verlet step ──────────────────────────────────────────

class TestVerletStep:

    def test_first_step_from_rest_is_gravity_only(self):
        mesh = ClothMesh(1.0, 1.0, 1, 1, pin_top=False)
        mesh.springs = []
        solver = ClothSolver(mesh)
        solver.step(DT)
        for p in mesh.particles:
            assert p.pos[1] - p.original_pos[1] == pytest.approx(-9.81 * DT * DT)
            assert np.array_equal(p.prev, p.original_pos)

    def test_damping_scales_previous_displacement(self):
        mesh = ClothMesh(1.0, 1.0, 1, 1, pin_top=False)
        mesh.springs = []
        solver = ClothSolver(mesh)
        p = mesh.particles[0]
        p.prev = p.pos - np.array([0.1, 0.0, 0.0])
        x0 = p.pos[0]
        solver.step(DT)
        assert p.pos[0] - x0 == pytest.approx(0.1 * (1 - DAMPING))

    def test_pinned_particles_never_move(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        mesh.add_wind([2.0, 0.0, 2.0])
        pinned = mesh.pinned_indices()
        assert pinned
        for _ in range(60):
            solver.step(DT)
        for i in pinned:
            p = mesh.particles[i]
            assert np.array_equal(p.pos, p.original_pos)
            assert np.array_equal(p.prev, p.original_pos)

    def test_ground_clamp_and_bounce(self):
        mesh = ClothMesh(1.0, 1.0, 1, 1, pin_top=False)
        mesh.springs = []
        solver = ClothSolver(mesh)
        p = mesh.particles[0]
        p.pos = np.array([0.0, GROUND_Y + 0.01, 0.0])
        p.prev = np.array([0.0, GROUND_Y + 0.11, 0.0])
        solver.step(DT)
        assert p.pos[1] == GROUND_Y
        # prev mirrored below the plane → next implicit velocity points up
        assert p.prev[1] < GROUND_Y
        solver.step(DT)
        assert p.pos[1] > GROUND_Y

    def test_integration_keeps_cloth_above_ground(self):
        mesh = ClothMesh(2.0, 2.0, 8, 8, pin_top=False)
        solver = ClothSolver(mesh)
        for _ in range(150):
            solver.accumulate_forces()
            solver.integrate(DT)
            assert mesh.positions()[:, 1].min() >= GROUND_Y
            solver.satisfy_constraints()

    def test_settled_cloth_lies_on_ground(self):
        mesh = ClothMesh(2.0, 2.0, 8, 8, pin_top=False)
        solver = ClothSolver(mesh)
        for _ in range(150):
            solver.step(DT)
        assert mesh.positions()[:, 1].min() == pytest.approx(GROUND_Y, abs=0.2)

    def test_constant_override_is_read_live(self, monkeypatch):
        mesh = ClothMesh(1.0, 1.0, 1, 1, pin_top=False)
        mesh.springs = []
        solver = ClothSolver(mesh)
        monkeypatch.setattr(physics, "GRAVITY", (0.0, 0.0, 0.0))
        solver.step(DT)
        assert np.array_equal(mesh.positions(), np.array([p.original_pos for p in mesh.particles]))


# ── Constraint relaxation ────────────────────────────────

class TestRelaxation:

    def test_isolated_spring_converges_monotonically(self):
        mesh = single_spring_mesh()
        mesh.particles[1].pos = np.array([1.5, 0.9, 0.3])
        solver = ClothSolver(mesh)

        def error():
            d = np.linalg.norm(mesh.particles[1].pos - mesh.particles[0].pos)
            return abs(d - 1.0)

        errors = [error()]
        for _ in range(15):
            solver.satisfy_constraints(1)
            errors.append(error())
        assert all(b <= a for a, b in zip(errors, errors[1:]))
        assert errors[-1] < 1e-6

    def test_compressed_spring_also_converges(self):
        mesh = single_spring_mesh()
        mesh.particles[1].pos = np.array([-0.2, 0.5, 0.0])
        solver = ClothSolver(mesh)
        before = abs(np.linalg.norm(mesh.particles[1].pos - mesh.particles[0].pos) - 1.0)
        solver.satisfy_constraints(1)
        after = abs(np.linalg.norm(mesh.particles[1].pos - mesh.particles[0].pos) - 1.0)
        assert after == pytest.approx(before * (1 - STIFFNESS))

    def test_free_pair_splits_correction_symmetrically(self):
        mesh = single_spring_mesh()
        mesh.particles[1].pos = np.array([1.5, 0.5, 0.0])   # stretched by 1.0 along x
        solver = ClothSolver(mesh)
        solver.satisfy_constraints(1)
        # correction 0.8 split in half between both ends
        np.testing.assert_allclose(mesh.particles[0].pos, [-0.1, 0.5, 0.0])
        np.testing.assert_allclose(mesh.particles[1].pos, [1.1, 0.5, 0.0])

    def test_pinned_endpoint_takes_no_correction(self):
        mesh = single_spring_mesh(rest_pinned_a=True)
        mesh.particles[1].pos = np.array([1.5, 0.5, 0.0])
        solver = ClothSolver(mesh)
        solver.satisfy_constraints(1)
        np.testing.assert_allclose(mesh.particles[0].pos, [-0.5, 0.5, 0.0])
        np.testing.assert_allclose(mesh.particles[1].pos, [0.7, 0.5, 0.0])

    def test_both_pinned_is_noop(self):
        mesh = single_spring_mesh(rest_pinned_a=True)
        mesh.particles[1].pinned = True
        mesh.particles[1].pos = np.array([1.5, 0.5, 0.0])
        ClothSolver(mesh).satisfy_constraints(3)
        np.testing.assert_allclose(mesh.particles[1].pos, [1.5, 0.5, 0.0])

    def test_relaxation_does_not_touch_the_ground(self):
        mesh = single_spring_mesh(rest_pinned_a=True)
        mesh.springs = [Spring(0, 1, 0.1)]
        mesh.particles[0].pos = np.array([0.0, -2.5, 0.0])
        mesh.particles[1].pos = np.array([0.0, -2.0, 0.0])
        ClothSolver(mesh).satisfy_constraints(1)
        # stretched by 0.4, pinned end: the free end takes the whole 0.8 share
        assert mesh.particles[1].pos[1] == pytest.approx(-2.32)

    def test_zero_length_spring_is_skipped(self):
        mesh = single_spring_mesh()
        mesh.particles[1].pos = mesh.particles[0].pos.copy()
        ClothSolver(mesh).satisfy_constraints(2)
        assert np.array_equal(mesh.particles[0].pos, mesh.particles[1].pos)
        assert np.all(np.isfinite(mesh.positions()))

    def test_iteration_count_is_configurable(self):
        calls = []

        class CountingCollider:
            def check_collisions(self, particle):
                calls.append(particle)

        mesh = ClothMesh(1.0, 1.0, 2, 2, pin_top=False)
        solver = ClothSolver(mesh, CountingCollider(), iterations=3)
        solver.step(DT)
        # one pass after integration + one pass per relaxation iteration
        assert len(calls) == 9 * (1 + 3)

    def test_invalid_iteration_count(self):
        with pytest.raises(InvalidConfiguration):
            ClothSolver(ClothMesh(1.0, 1.0, 1, 1), iterations=0)


# ── Deformation ──────────────────────────────────────────

class TestDeformation:

    def test_target_moves_by_full_force(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        i = mesh.particle_index(5, 5)
        before = mesh.particles[i].pos.copy()
        solver.deform_area(i, [0.0, 0.0, 0.1])
        np.testing.assert_allclose(mesh.particles[i].pos, before + [0.0, 0.0, 0.1])

    def test_neighbours_get_linear_falloff_share(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)    # cell 0.2
        solver = ClothSolver(mesh)
        i = mesh.particle_index(5, 5)
        solver.deform_area(i, [0.0, 0.0, 0.1])

        target = mesh.particles[i].pos
        near = mesh.particles[mesh.particle_index(6, 5)]
        d = np.linalg.norm(near.original_pos - target)
        factor = 0.3 * (1 - d / 0.3)
        assert near.pos[2] == pytest.approx(0.1 * factor)

        far = mesh.particles[mesh.particle_index(8, 5)]
        assert far.pos[2] == 0.0

    def test_pinned_target_is_noop(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        before = mesh.positions()
        solver.deform_area(0, [0.0, 1.0, 0.0])
        assert np.array_equal(before, mesh.positions())
        assert solver.events == []

    def test_pinned_neighbours_are_not_dragged(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        solver.deform_area(mesh.particle_index(1, 0), [0.0, 0.1, 0.0])
        assert np.array_equal(mesh.particles[0].pos, mesh.particles[0].original_pos)

    @pytest.mark.parametrize("index", [None, -1, 10_000])
    def test_unknown_index_is_noop(self, index):
        mesh = ClothMesh(2.0, 2.0, 4, 4)
        solver = ClothSolver(mesh)
        solver.deform_area(index, [1.0, 1.0, 1.0])
        assert np.array_equal(mesh.positions(), np.array([p.original_pos for p in mesh.particles]))

    def test_deformation_event(self):
        received = []
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh, listener=received.append)
        i = mesh.particle_index(5, 5)
        solver.deform_area(i, [0.0, 3.0, 4.0])
        assert len(solver.events) == 1
        ev = solver.events[0]
        assert received == [ev]
        assert ev["type"] == "deformation"
        assert ev["force"] == [0.0, 3.0, 4.0]
        assert ev["position"] == pytest.approx(mesh.particles[i].original_pos.tolist())
        assert ev["intensity"] == 1.0

    def test_perturbation_carries_into_next_step(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        i = mesh.particle_index(5, 8)
        solver.deform_area(i, [0.0, 0.0, 0.05])
        solver.step(DT)
        # prev still at rest, so the drag became forward velocity
        assert mesh.particles[i].pos[2] > 0.0


class TestAreaForce:

    def test_linear_falloff_in_grid_space(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        mesh.apply_area_force(5, 5, 2.0, [0.0, 0.0, 1.0])
        assert mesh.particles[mesh.particle_index(5, 5)].pos[2] == pytest.approx(1.0)
        assert mesh.particles[mesh.particle_index(6, 5)].pos[2] == pytest.approx(0.5)
        assert mesh.particles[mesh.particle_index(7, 5)].pos[2] == pytest.approx(0.0)
        assert mesh.particles[mesh.particle_index(8, 5)].pos[2] == 0.0

    def test_pinned_particles_are_skipped(self):
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        mesh.apply_area_force(0, 0, 3.0, [0.0, 0.0, 1.0])
        assert mesh.particles[0].pos[2] == 0.0
        assert mesh.particles[1].pos[2] > 0.0


def test_particle_velocity_is_displacement():
    p = Particle([1.0, 2.0, 3.0])
    assert np.array_equal(p.velocity, np.zeros(3))
    p.pos = p.pos + np.array([0.5, 0.0, 0.0])
    np.testing.assert_allclose(p.velocity, [0.5, 0.0, 0.0])

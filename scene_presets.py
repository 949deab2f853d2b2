"""
Scene Preset System
Headless scenes (drape over sphere, drape over box, wind gust, drag,
falling bodies) that build the cloth, run it and return a result dict.
"""

import numpy as np
import physics as _phys
from physics import ClothMesh, ClothSolver
from bodies import Box, RigidBodyManager, Sphere

# Simulation timestep (one 60 Hz frame)
_DT = 1.0 / 60.0


def _min_clearance(mesh: ClothMesh, sphere: Sphere) -> float:
    """Smallest particle distance to the sphere center."""
    return float(np.min(np.linalg.norm(mesh.positions() - sphere.position, axis=1)))


def _max_face_offset(mesh: ClothMesh, box: Box) -> np.ndarray:
    """Per-particle Chebyshev distance to the box center."""
    return np.max(np.abs(mesh.positions() - box.position), axis=1)


class ScenePreset:
    """Each preset builds a scene → optionally runs it → returns a result dict."""

    @staticmethod
    def drape_over_sphere(run=True, steps: int = 200) -> dict:
        """Unpinned 10x10 cloth falling around a fixed sphere at its rest center."""
        mesh = ClothMesh(2.0, 2.0, 10, 10, pin_top=False)
        bodies = RigidBodyManager()
        sphere = bodies.add(Sphere([0.0, 0.0, 0.0], 0.5, name="ball"))
        solver = ClothSolver(mesh, bodies)

        collisions = 0
        done = 0
        if run:
            for _ in range(steps):
                solver.step(_DT)
                collisions += len(bodies.events)
                bodies.events.clear()
                done += 1

        return {"mesh": mesh, "solver": solver, "bodies": bodies, "sphere": sphere,
                "steps": done, "collisions": collisions,
                "min_clearance": _min_clearance(mesh, sphere),
                "min_y": float(mesh.positions()[:, 1].min())}

    @staticmethod
    def drape_over_box(run=True, steps: int = 200) -> dict:
        """Unpinned cloth dropping onto a fixed box resting under its center."""
        mesh = ClothMesh(2.0, 2.0, 10, 10, pin_top=False)
        bodies = RigidBodyManager()
        box = bodies.add(Box([0.0, -1.2, 0.0], 0.3, name="crate"))
        solver = ClothSolver(mesh, bodies)

        done = 0
        if run:
            for _ in range(steps):
                solver.step(_DT)
                done += 1

        return {"mesh": mesh, "solver": solver, "bodies": bodies, "box": box,
                "steps": done,
                "min_face_offset": float(_max_face_offset(mesh, box).min()),
                "min_y": float(mesh.positions()[:, 1].min())}

    @staticmethod
    def wind_gust(run=True, steps: int = 60, gust=(0.0, 0.0, 2.0)) -> dict:
        """Pinned curtain blown by a single decaying gust."""
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        pinned_before = mesh.positions()[mesh.pinned_indices()].copy()
        mesh.add_wind(gust)

        peak_z = 0.0
        done = 0
        if run:
            for _ in range(steps):
                solver.step(_DT)
                peak_z = max(peak_z, float(mesh.positions()[:, 2].max()))
                done += 1

        return {"mesh": mesh, "solver": solver, "steps": done, "peak_z": peak_z,
                "pinned_before": pinned_before,
                "wind": mesh.wind_force.copy()}

    @staticmethod
    def drag(run=True, steps: int = 30, force=(0.0, 0.0, 0.1)) -> dict:
        """Pointer drag on the middle of a pinned curtain."""
        mesh = ClothMesh(2.0, 2.0, 10, 10)
        solver = ClothSolver(mesh)
        target = mesh.particle_index(5, 5)
        solver.deform_area(target, force)
        events = list(solver.events)
        z_after_drag = float(mesh.particles[target].pos[2])

        done = 0
        if run:
            for _ in range(steps):
                solver.step(_DT)
                done += 1

        return {"mesh": mesh, "solver": solver, "target": target, "steps": done,
                "events": events, "z_after_drag": z_after_drag}

    @staticmethod
    def falling_bodies(run=True, steps: int = 600) -> dict:
        """A sphere and a box dropped from 2 m onto the body ground plane."""
        bodies = RigidBodyManager()
        sphere = bodies.add(Sphere([0.5, 2.0, 0.0], 0.25, velocity=[0.4, 0.0, 0.0]))
        box = bodies.add(Box([-0.5, 2.0, 0.0], 0.25))

        done = 0
        if run:
            for _ in range(steps):
                bodies.update_physics(_DT)
                done += 1

        return {"bodies": bodies, "sphere": sphere, "box": box, "steps": done,
                "ground_y": _phys.BODY_GROUND_Y}

"""
3D Cloth Physics Engine
Verlet particles, spring relaxation, ground contact and deformation.
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Constants (SI units, Y-up)
# ──────────────────────────────────────────────
GRAVITY: tuple = (0.0, -9.81, 0.0)  # m/s^2

# ── Runtime-editable behavior constants ───────────────────────────────────────
# These are read by name every call, so a caller can mutate them live via:
#   import physics as _phys;  _phys.STIFFNESS = 0.6
DAMPING: float = 0.01               # fraction of last displacement lost per step
STIFFNESS: float = 0.8              # spring relaxation stiffness (0..1)
RELAXATION_ITERATIONS: int = 5      # constraint passes per step
WIND_DECAY: float = 0.95            # wind multiplier applied after every step
GROUND_Y: float = -2.0              # cloth ground plane height
GROUND_BOUNCE: float = 0.3          # cloth ground restitution

SPHERE_BOUNCE: float = 0.3          # particle-sphere restitution
BOX_BOUNCE: float = 0.3             # particle-box restitution
SPHERE_INTENSITY_SCALE: float = 0.5 # collision event intensity per unit normal velocity
BOX_INTENSITY_SCALE: float = 0.3

BODY_GROUND_Y: float = -1.8         # rigid-body ground plane height
BODY_BOUNCE: float = 0.3            # rigid-body ground restitution
BODY_HORIZONTAL_DAMPING: float = 0.99

PIN_STRIDE: int = 5                 # pin every Nth particle of the top row
DEFORM_INFLUENCE: float = 0.3       # share of a drag passed to neighbours
DEFORM_RADIUS: float = 0.3          # world-space reach of a drag (m)

MAX_DT: float = 0.033               # frame delta clamp (s)


class InvalidConfiguration(ValueError):
    """Raised when a mesh, body or solver is built with unusable parameters."""


@dataclass
class Particle:
    """Cloth particle; velocity is implicit in ``pos - prev``."""
    pos: np.ndarray
    pinned: bool = False
    prev: np.ndarray = field(init=False)
    acc: np.ndarray = field(init=False)
    original_pos: np.ndarray = field(init=False)

    def __post_init__(self):
        self.pos = np.array(self.pos, dtype=float)
        self.prev = self.pos.copy()
        self.acc = np.zeros(3)
        self.original_pos = self.pos.copy()
        self.original_pos.flags.writeable = False

    @property
    def velocity(self) -> np.ndarray:
        """Displacement over the last step (not divided by dt)."""
        return self.pos - self.prev


@dataclass(frozen=True)
class Spring:
    """Distance constraint between two particle indices."""
    a: int
    b: int
    rest: float
    kind: str = "structural"   # "structural" | "shear" | "bending"


class ClothMesh:
    """Rectangular grid of particles joined by structural, shear and bending springs.

    The grid lies in the z = 0 plane, centered at the origin, row 0 at the top.
    Particle index is ``row * (cols + 1) + col``.
    """

    def __init__(self, width: float, height: float, cols: int, rows: int,
                 pin_top: bool = True):
        if not (width > 0 and height > 0):
            raise InvalidConfiguration(
                f"cloth size must be positive, got {width}x{height}")
        if int(cols) != cols or int(rows) != rows or cols < 1 or rows < 1:
            raise InvalidConfiguration(
                f"cloth needs at least one column and row, got {cols}x{rows}")
        stride = int(PIN_STRIDE)
        if pin_top and stride <= 0:
            raise InvalidConfiguration(f"pin stride must be positive, got {stride}")

        self.width = float(width)
        self.height = float(height)
        self.cols = int(cols)
        self.rows = int(rows)
        self.wind_force = np.zeros(3)

        self.particles: List[Particle] = []
        for row in range(self.rows + 1):
            for col in range(self.cols + 1):
                u = col / self.cols
                v = row / self.rows
                pos = [(u - 0.5) * self.width, (0.5 - v) * self.height, 0.0]
                pinned = pin_top and row == 0 and col % stride == 0
                self.particles.append(Particle(pos, pinned=pinned))

        self.springs: List[Spring] = []
        self._build_springs()

        logger.debug("Built %dx%d cloth: %d particles, %d springs",
                     self.cols, self.rows, len(self.particles), len(self.springs))

    # ──────────────────────────────────────────
    # Construction
    # ──────────────────────────────────────────
    def _link(self, a: int, b: int, kind: str) -> None:
        rest = float(np.linalg.norm(self.particles[b].original_pos
                                    - self.particles[a].original_pos))
        self.springs.append(Spring(a, b, rest, kind))

    def _build_springs(self) -> None:
        idx = self.particle_index
        cols, rows = self.cols, self.rows

        # Structural: right and down neighbours
        for row in range(rows + 1):
            for col in range(cols + 1):
                if col < cols:
                    self._link(idx(col, row), idx(col + 1, row), "structural")
                if row < rows:
                    self._link(idx(col, row), idx(col, row + 1), "structural")

        # Shear: both diagonals of every cell
        for row in range(rows):
            for col in range(cols):
                self._link(idx(col, row), idx(col + 1, row + 1), "shear")
                self._link(idx(col + 1, row), idx(col, row + 1), "shear")

        # Bending: skip one particle along each axis
        for row in range(rows + 1):
            for col in range(cols - 1):
                self._link(idx(col, row), idx(col + 2, row), "bending")
        for row in range(rows - 1):
            for col in range(cols + 1):
                self._link(idx(col, row), idx(col, row + 2), "bending")

    # ──────────────────────────────────────────
    # Accessors
    # ──────────────────────────────────────────
    def particle_index(self, col: int, row: int) -> Optional[int]:
        """Index of the particle at grid (col, row), or None outside the grid."""
        if col < 0 or col > self.cols or row < 0 or row > self.rows:
            return None
        return row * (self.cols + 1) + col

    def grid_coords(self, index: int) -> Optional[tuple]:
        """Grid (col, row) of a particle index, or None for an unknown index."""
        if index < 0 or index >= len(self.particles):
            return None
        return index % (self.cols + 1), index // (self.cols + 1)

    def positions(self) -> np.ndarray:
        """Current positions as an (N, 3) array in particle order."""
        return np.array([p.pos for p in self.particles])

    def pinned_indices(self) -> List[int]:
        return [i for i, p in enumerate(self.particles) if p.pinned]

    # ──────────────────────────────────────────
    # Mutation
    # ──────────────────────────────────────────
    def reset(self) -> None:
        """Put every particle back at rest and drop any wind."""
        for p in self.particles:
            p.pos = p.original_pos.copy()
            p.prev = p.original_pos.copy()
            p.acc = np.zeros(3)
        self.wind_force = np.zeros(3)
        logger.info("Cloth has been reset.")

    def add_wind(self, force) -> None:
        """Superpose a gust onto the current wind force."""
        self.wind_force = self.wind_force + np.array(force, dtype=float)

    def apply_area_force(self, center_col: float, center_row: float,
                         radius: float, force) -> None:
        """Offset free particles within ``radius`` grid cells of a grid point.

        The offset falls off linearly from ``force`` at the center to zero at
        the edge of the area.
        """
        if radius <= 0:
            return
        force = np.array(force, dtype=float)
        for i, p in enumerate(self.particles):
            col, row = self.grid_coords(i)
            distance = float(np.hypot(col - center_col, row - center_row))
            if distance <= radius and not p.pinned:
                p.pos = p.pos + force * (1.0 - distance / radius)


class ClothSolver:
    """Position-based cloth solver.

    Owns the per-frame update of a :class:`ClothMesh`. Rigid-body collisions
    are delegated to an optional collider exposing ``check_collisions(particle)``
    (see ``bodies.RigidBodyManager``).

    Events are appended to ``self.events`` and, when given, passed to
    ``listener`` as they happen.
    """

    def __init__(self, mesh: ClothMesh, colliders=None,
                 iterations: Optional[int] = None,
                 listener: Optional[Callable[[dict], None]] = None):
        if iterations is not None and iterations < 1:
            raise InvalidConfiguration(f"iterations must be >= 1, got {iterations}")
        self.mesh = mesh
        self.colliders = colliders
        self.iterations = iterations
        self.listener = listener
        self.events: list = []

    def _emit(self, event: dict) -> None:
        self.events.append(event)
        if self.listener is not None:
            self.listener(event)

    # ──────────────────────────────────────────
    # Phase 1: Forces
    # ──────────────────────────────────────────
    def accumulate_forces(self) -> None:
        acc = np.array(GRAVITY, dtype=float) + self.mesh.wind_force
        for p in self.mesh.particles:
            if p.pinned:
                continue
            p.acc = acc.copy()

    # ──────────────────────────────────────────
    # Phase 2 + 3: Verlet integration and contact
    # ──────────────────────────────────────────
    def integrate(self, dt: float) -> None:
        """Semi-implicit Verlet step followed by ground and body contact.

        Damping scales the previous displacement, so it compounds with the
        time step rather than acting on a physical velocity.
        """
        dt2 = dt * dt
        keep = 1.0 - DAMPING
        for p in self.mesh.particles:
            if p.pinned:
                continue
            velocity = (p.pos - p.prev) * keep
            p.prev = p.pos.copy()
            p.pos = p.pos + velocity + p.acc * dt2

            self._ground_contact(p)
            if self.colliders is not None:
                self.colliders.check_collisions(p)

    @staticmethod
    def _ground_contact(p: Particle) -> None:
        if p.pos[1] < GROUND_Y:
            p.pos[1] = GROUND_Y
            # Invert and attenuate the implicit vertical velocity
            p.prev[1] = p.pos[1] + (p.pos[1] - p.prev[1]) * GROUND_BOUNCE

    # ──────────────────────────────────────────
    # Phase 4: Constraint relaxation
    # ──────────────────────────────────────────
    def relax_spring(self, spring: Spring) -> None:
        """Move the free endpoint(s) of one spring toward its rest length."""
        A = self.mesh.particles[spring.a]
        B = self.mesh.particles[spring.b]
        if A.pinned and B.pinned:
            return
        delta = B.pos - A.pos
        dist = float(np.linalg.norm(delta))
        if dist == 0.0:
            return

        correction = delta * (STIFFNESS * (dist - spring.rest) / dist)
        if not A.pinned and not B.pinned:
            A.pos += correction * 0.5
            B.pos -= correction * 0.5
        elif not A.pinned:
            A.pos += correction
        else:
            B.pos -= correction

    def satisfy_constraints(self, iterations: Optional[int] = None) -> None:
        """Relax every spring ``iterations`` times.

        After each pass body collisions are resolved again for every free
        particle, so a correction can never leave a particle inside a body at
        the end of the step. The ground is only enforced during integration.
        """
        if iterations is None:
            iterations = self.iterations if self.iterations is not None else RELAXATION_ITERATIONS
        particles = self.mesh.particles
        for _ in range(iterations):
            for spring in self.mesh.springs:
                self.relax_spring(spring)

            if self.colliders is None:
                continue
            for p in particles:
                if not p.pinned:
                    self.colliders.check_collisions(p)

    # ──────────────────────────────────────────
    # Main Update Loop
    # ──────────────────────────────────────────
    def step(self, dt: float, iterations: Optional[int] = None) -> None:
        """Advance the cloth by ``dt`` seconds.

        The caller is expected to clamp ``dt`` (see ``MAX_DT``).
        """
        self.events.clear()
        self.accumulate_forces()
        self.integrate(dt)
        self.satisfy_constraints(iterations)
        self.mesh.wind_force = self.mesh.wind_force * WIND_DECAY

    def simulate(self, steps: int, dt: float = 1.0 / 60.0, bodies=None) -> None:
        """Run ``steps`` fixed steps; ``bodies`` (if given) falls alongside."""
        for _ in range(steps):
            self.step(dt)
            if bodies is not None:
                bodies.update_physics(dt)

    # ──────────────────────────────────────────
    # Interaction
    # ──────────────────────────────────────────
    def deform_area(self, index: Optional[int], force) -> None:
        """Drag one particle by ``force`` and its neighbours by a falloff share.

        This is an instantaneous position offset; the next Verlet step turns it
        into velocity. Pinned or unknown targets are ignored.
        """
        particles = self.mesh.particles
        if index is None or index < 0 or index >= len(particles):
            return
        target = particles[index]
        if target.pinned:
            return

        force = np.array(force, dtype=float)
        self._emit({
            "type": "deformation",
            "force": force.tolist(),
            "position": target.pos.tolist(),
            "intensity": min(float(np.linalg.norm(force)), 1.0),
        })

        target.pos = target.pos + force
        for i, other in enumerate(particles):
            if i == index or other.pinned:
                continue
            distance = float(np.linalg.norm(other.pos - target.pos))
            if distance < DEFORM_RADIUS:
                factor = DEFORM_INFLUENCE * (1.0 - distance / DEFORM_RADIUS)
                other.pos = other.pos + force * factor

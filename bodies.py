"""
Rigid Bodies — collision shapes for the cloth and their own free fall.

Shapes form a closed set (Sphere | Box). Collision tests and responses are
plain functions that dispatch on the shape type.
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

import physics as _phys
from physics import InvalidConfiguration, Particle

logger = logging.getLogger(__name__)


def _vec3(value, what: str) -> np.ndarray:
    vec = np.array(value, dtype=float)
    if vec.shape != (3,):
        raise InvalidConfiguration(f"{what} needs three components, got {value!r}")
    return vec


@dataclass
class Sphere:
    """Sphere collider."""
    position: np.ndarray
    radius: float
    color: tuple = (0.8, 0.3, 0.3)
    name: str = ""
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    visible: bool = True
    kind: str = field(default="sphere", init=False)

    def __post_init__(self):
        if not self.radius > 0:
            raise InvalidConfiguration(f"sphere radius must be positive, got {self.radius}")
        self.position = _vec3(self.position, "position")
        self.velocity = _vec3(self.velocity, "velocity")


@dataclass
class Box:
    """Axis-aligned box collider, ``half_extent`` from center to each face."""
    position: np.ndarray
    half_extent: float
    color: tuple = (0.3, 0.8, 0.3)
    name: str = ""
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    visible: bool = True
    kind: str = field(default="box", init=False)

    def __post_init__(self):
        if not self.half_extent > 0:
            raise InvalidConfiguration(
                f"box half extent must be positive, got {self.half_extent}")
        self.position = _vec3(self.position, "position")
        self.velocity = _vec3(self.velocity, "velocity")

    @property
    def size(self) -> float:
        """Edge length."""
        return 2.0 * self.half_extent


RigidBody = Union[Sphere, Box]


# ──────────────────────────────────────────────
# Containment
# ──────────────────────────────────────────────
def contains(body: RigidBody, point: np.ndarray) -> bool:
    """True if ``point`` lies inside ``body``."""
    if isinstance(body, Sphere):
        return float(np.linalg.norm(point - body.position)) < body.radius
    if isinstance(body, Box):
        return bool(np.all(np.abs(point - body.position) <= body.half_extent))
    raise TypeError(f"not a rigid body: {type(body).__name__}")


# ──────────────────────────────────────────────
# Resolution
# ──────────────────────────────────────────────
def _resolve_sphere(sphere: Sphere, pos: np.ndarray, prev: np.ndarray) -> Optional[float]:
    offset = pos - sphere.position
    distance = float(np.linalg.norm(offset))
    if not (0.0 < distance < sphere.radius):
        return None

    normal = offset / distance
    pos[:] = sphere.position + normal * sphere.radius

    velocity = pos - prev
    normal_vel = float(np.dot(velocity, normal))
    if normal_vel >= 0:
        return None

    # Strip the inward component and send part of it back out
    bounced = velocity - normal * normal_vel * (1.0 + _phys.SPHERE_BOUNCE)
    prev[:] = pos - bounced
    return abs(normal_vel) * _phys.SPHERE_INTENSITY_SCALE


def _resolve_box(box: Box, pos: np.ndarray, prev: np.ndarray) -> Optional[float]:
    offset = pos - box.position
    depth = box.half_extent - np.abs(offset)
    if np.any(depth < 0):
        return None

    # Least penetration wins; ties go to the earlier axis
    if depth[0] <= depth[1] and depth[0] <= depth[2]:
        axis = 0
    elif depth[1] <= depth[2]:
        axis = 1
    else:
        axis = 2

    side = box.half_extent if offset[axis] > 0 else -box.half_extent
    pos[axis] = box.position[axis] + side
    vel = pos[axis] - prev[axis]
    prev[axis] = pos[axis] - vel * _phys.BOX_BOUNCE
    return abs(vel) * _phys.BOX_INTENSITY_SCALE


def resolve_collision(body: RigidBody, pos: np.ndarray, prev: np.ndarray) -> Optional[float]:
    """Push a penetrating point out of ``body``, rewriting ``pos``/``prev`` in place.

    Returns the collision intensity, or None when nothing was resolved.
    """
    if isinstance(body, Sphere):
        return _resolve_sphere(body, pos, prev)
    if isinstance(body, Box):
        return _resolve_box(body, pos, prev)
    raise TypeError(f"not a rigid body: {type(body).__name__}")


class RigidBodyManager:
    """Ordered collection of rigid bodies acting as the cloth's collider."""

    def __init__(self, listener: Optional[Callable[[dict], None]] = None):
        self.bodies: List[RigidBody] = []
        self.listener = listener
        self.events: list = []
        self._added = 0   # auto-name counter, never reused

    def _emit(self, event: dict) -> None:
        self.events.append(event)
        if self.listener is not None:
            self.listener(event)

    def __len__(self) -> int:
        return len(self.bodies)

    def __iter__(self):
        return iter(self.bodies)

    # ──────────────────────────────────────────
    # Collection
    # ──────────────────────────────────────────
    def add(self, body: RigidBody) -> RigidBody:
        if not body.name:
            body.name = f"{body.kind}{self._added}"
        self._added += 1
        self.bodies.append(body)
        logger.debug("Added %s '%s' at %s", body.kind, body.name, body.position)
        return body

    def remove(self, body: RigidBody) -> bool:
        """Remove ``body``; returns False if it was not registered."""
        for i, b in enumerate(self.bodies):
            if b is body:
                del self.bodies[i]
                logger.debug("Removed %s '%s'", body.kind, body.name)
                return True
        return False

    def pop(self) -> Optional[RigidBody]:
        """Remove and return the most recently added body."""
        if not self.bodies:
            return None
        return self.bodies.pop()

    def clear(self) -> None:
        self.bodies.clear()
        logger.info("All rigid bodies cleared.")

    def count(self) -> int:
        return len(self.bodies)

    def by_type(self, kind: str) -> List[RigidBody]:
        return [b for b in self.bodies if b.kind == kind]

    def find(self, name: str) -> Optional[RigidBody]:
        return next((b for b in self.bodies if b.name == name), None)

    def move_to(self, index: int, position) -> None:
        """Teleport body ``index``; out-of-range indices are ignored.

        Raises InvalidConfiguration if ``position`` is not a 3-vector.
        """
        position = _vec3(position, "position")
        if 0 <= index < len(self.bodies):
            self.bodies[index].position = position

    # ──────────────────────────────────────────
    # Cloth collisions
    # ──────────────────────────────────────────
    def check_collisions(self, particle: Particle) -> None:
        """Resolve ``particle`` against every visible body, in order."""
        for body in self.bodies:
            if body.visible and contains(body, particle.pos):
                intensity = resolve_collision(body, particle.pos, particle.prev)
                if intensity is not None:
                    self._emit({"type": "collision", "body": body.kind,
                                "name": body.name, "intensity": intensity})

    # ──────────────────────────────────────────
    # Free fall
    # ──────────────────────────────────────────
    def update_physics(self, dt: float) -> None:
        """Advance every body by ``dt``: gravity, motion, ground bounce."""
        self.events.clear()
        gravity = np.array(_phys.GRAVITY, dtype=float)
        for body in self.bodies:
            body.velocity = body.velocity + gravity * dt
            body.position = body.position + body.velocity * dt

            if body.position[1] < _phys.BODY_GROUND_Y:
                body.position[1] = _phys.BODY_GROUND_Y
                body.velocity[1] = -body.velocity[1] * _phys.BODY_BOUNCE
                body.velocity[0] *= _phys.BODY_HORIZONTAL_DAMPING
                body.velocity[2] *= _phys.BODY_HORIZONTAL_DAMPING

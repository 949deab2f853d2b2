"""
ClothController — Layer 2 (Simulation Logic)

Owns the cloth mesh, its solver and the rigid-body collection, and keeps
every mutation of simulation state behind one object. The shell (renderer,
audio, input) talks to it through:

  ctrl.step(dt_frame)         — advance cloth + bodies once per frame
  ctrl.positions()            — (N, 3) particle positions for vertex buffers
  ctrl.drain_events()         — collision / deformation / wind dicts for sound
  ctrl.execute_command(text)  — JSON commands (reset, wind, deform, add, …)
"""

import json
import logging
import os
import random
from pathlib import Path
from typing import Optional

import numpy as np

import physics as _phys
from physics import ClothMesh, ClothSolver
from bodies import Box, RigidBodyManager, Sphere

logger = logging.getLogger(__name__)


DEFAULT_STATUS_MSG = "[R] Reset  [Space] Wind  [1] Sphere  [2] Box  [Del] Remove  [P] Pause"


class ClothController:
    """Layer 2: simulation state + per-frame orchestration."""

    # ── Class-level constants ─────────────────────────────────────────────────
    CLOTH_WIDTH  = 2.0
    CLOTH_HEIGHT = 2.0
    CLOTH_COLS   = 30
    CLOTH_ROWS   = 20
    WIND_GUST    = (0.0, 0.0, 2.0)
    WIND_SOUND_SCALE = 0.1
    WIND_SOUND_MIN   = 0.05

    # Constants that set_params() may overwrite on the physics module
    TUNABLE_PARAMS = (
        "GRAVITY", "DAMPING", "STIFFNESS", "RELAXATION_ITERATIONS", "WIND_DECAY",
        "GROUND_Y", "GROUND_BOUNCE", "SPHERE_BOUNCE", "BOX_BOUNCE",
        "SPHERE_INTENSITY_SCALE", "BOX_INTENSITY_SCALE",
        "BODY_GROUND_Y", "BODY_BOUNCE", "BODY_HORIZONTAL_DAMPING",
        "DEFORM_INFLUENCE", "DEFORM_RADIUS", "MAX_DT",
    )

    # ── Constructor ───────────────────────────────────────────────────────────

    def __init__(self, width: float = CLOTH_WIDTH, height: float = CLOTH_HEIGHT,
                 cols: int = CLOTH_COLS, rows: int = CLOTH_ROWS,
                 pin_top: bool = True, iterations: Optional[int] = None):
        self.bodies = RigidBodyManager()
        self.mesh = ClothMesh(width, height, cols, rows, pin_top=pin_top)
        self.solver = ClothSolver(self.mesh, self.bodies, iterations=iterations)

        self.paused = False
        self.sim_time = 0.0
        self.frame = 0

        # Scene scripts
        self._last_scene_path = ""
        self._last_scene: dict = {}

        self.status_msg = DEFAULT_STATUS_MSG

        # Sound events (collision / deformation / wind), drained by the shell
        self.physics_events: list[dict] = []

    def _rebuild(self, width: float, height: float, cols: int, rows: int,
                 pin_top: bool = True) -> None:
        self.mesh = ClothMesh(width, height, cols, rows, pin_top=pin_top)
        self.solver = ClothSolver(self.mesh, self.bodies, iterations=self.solver.iterations)

    def _collect(self) -> None:
        self.physics_events.extend(self.solver.events)
        self.solver.events.clear()
        self.physics_events.extend(self.bodies.events)
        self.bodies.events.clear()

    # ──────────────────────────────────────────────────────────────────────────
    # Main loop
    # ──────────────────────────────────────────────────────────────────────────

    def step(self, dt_frame: float) -> None:
        """Advance cloth and bodies. Called every frame by the shell.

        Frame hitches are clamped to ``MAX_DT`` so one slow frame cannot blow
        the cloth apart.
        """
        if self.paused:
            return
        dt = min(float(dt_frame), _phys.MAX_DT)
        if dt <= 0.0:
            return

        self.solver.step(dt)
        self._collect()
        self.bodies.update_physics(dt)

        self.sim_time += dt
        self.frame += 1

    def drain_events(self) -> list[dict]:
        """Return and forget all events gathered since the last call."""
        events, self.physics_events = self.physics_events, []
        return events

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        self.status_msg = "Paused." if self.paused else DEFAULT_STATUS_MSG
        return self.paused

    def positions(self) -> np.ndarray:
        return self.mesh.positions()

    # ──────────────────────────────────────────────────────────────────────────
    # Cloth interaction
    # ──────────────────────────────────────────────────────────────────────────

    def reset(self) -> None:
        self.mesh.reset()
        self.status_msg = "Cloth reset."

    def add_wind(self, force=None) -> None:
        """Add a gust (default ``WIND_GUST``) and emit a wind sound event."""
        force = np.array(self.WIND_GUST if force is None else force, dtype=float)
        self.mesh.add_wind(force)
        intensity = min(float(np.linalg.norm(force)) * self.WIND_SOUND_SCALE, 1.0)
        if intensity >= self.WIND_SOUND_MIN:
            self.physics_events.append({
                "type": "wind", "force": force.tolist(), "intensity": intensity,
            })

    def deform(self, index: Optional[int], force) -> None:
        """Drag particle ``index`` by ``force`` (pointer drag)."""
        self.solver.deform_area(index, force)
        self._collect()

    def deform_at(self, col: int, row: int, force) -> None:
        self.deform(self.mesh.particle_index(col, row), force)

    # ──────────────────────────────────────────────────────────────────────────
    # Body management
    # ──────────────────────────────────────────────────────────────────────────

    def add_sphere(self, position, radius: float, color=(0.8, 0.3, 0.3),
                   name: str = "") -> Sphere:
        return self.bodies.add(Sphere(position, radius, color=tuple(color), name=name))

    def add_box(self, position, half_extent: float, color=(0.3, 0.8, 0.3),
                name: str = "") -> Box:
        return self.bodies.add(Box(position, half_extent, color=tuple(color), name=name))

    def spawn_body(self, kind: str = "sphere", size: float = 0.25,
                   rng: Optional[random.Random] = None):
        """Drop a randomly placed body from 2–3.5 m above the cloth.

        The cloth height under the spawn point is taken from the particle
        nearest to it in the xz-plane.
        """
        rng = rng or random.Random()
        x = (rng.random() - 0.5) * 3.0
        z = (rng.random() - 0.5) * 2.5

        cloth_y = -0.5
        if self.mesh.particles:
            pos = self.mesh.positions()
            nearest = int(np.argmin(np.hypot(pos[:, 0] - x, pos[:, 2] - z)))
            cloth_y = float(pos[nearest, 1])

        spawn = [x, cloth_y + 2.0 + rng.random() * 1.5, z]
        color = (rng.random(), rng.random(), rng.random())
        if kind == "sphere":
            return self.add_sphere(spawn, size, color)
        if kind == "box":
            return self.add_box(spawn, size, color)
        raise ValueError(f"unknown body kind '{kind}'")

    def remove_last_body(self):
        return self.bodies.pop()

    def clear_bodies(self) -> None:
        self.bodies.clear()

    def move_body(self, index: int, position) -> None:
        self.bodies.move_to(index, position)

    # ──────────────────────────────────────────────────────────────────────────
    # Parameters
    # ──────────────────────────────────────────────────────────────────────────

    def set_params(self, params: dict) -> tuple[list, list]:
        """Overwrite physics module constants by name.

        Returns ``(updated, skipped)`` name lists; unknown names and bad
        values are skipped, never raised.
        """
        updated, skipped = [], []
        for k, v in params.items():
            if k not in self.TUNABLE_PARAMS:
                skipped.append(k)
                continue
            try:
                if k == "GRAVITY":
                    value = tuple(float(c) for c in v)
                    if len(value) != 3:
                        raise ValueError("gravity needs three components")
                elif k == "RELAXATION_ITERATIONS":
                    value = int(v)
                    if value < 1:
                        raise ValueError("at least one iteration required")
                else:
                    value = float(v)
            except (TypeError, ValueError) as exc:
                logger.warning("Rejected param %s=%r: %s", k, v, exc)
                skipped.append(k)
                continue
            setattr(_phys, k, value)
            updated.append(k)

        msg = f"params: set {updated}"
        if skipped:
            msg += f"  (skipped: {skipped})"
        logger.info(msg)
        self.status_msg = msg
        return updated, skipped

    def get_params(self) -> dict:
        return {k: getattr(_phys, k) for k in self.TUNABLE_PARAMS}

    # ──────────────────────────────────────────────────────────────────────────
    # State export
    # ──────────────────────────────────────────────────────────────────────────

    def get_state_json(self) -> str:
        """Return current cloth + body state as compact single-line JSON."""
        particles = [[round(float(c), 4) for c in p.pos] for p in self.mesh.particles]
        bodies = []
        for b in self.bodies:
            entry = {
                "name": b.name,
                "kind": b.kind,
                "pos":  [round(float(c), 4) for c in b.position],
                "visible": b.visible,
            }
            if isinstance(b, Sphere):
                entry["radius"] = b.radius
            else:
                entry["half_extent"] = b.half_extent
            bodies.append(entry)
        return json.dumps({
            "cols": self.mesh.cols, "rows": self.mesh.rows,
            "particles": particles, "bodies": bodies,
        }, separators=(',', ':'))

    # ──────────────────────────────────────────────────────────────────────────
    # JSON commands
    # ──────────────────────────────────────────────────────────────────────────

    def execute_command(self, text: str) -> None:
        """Parse a JSON command string and dispatch to handlers."""
        if not text:
            self.status_msg = "empty command"
            return
        try:
            data = json.loads(text.replace('\r', ''))
        except json.JSONDecodeError as exc:
            logger.warning("JSON parse error: %s", exc)
            self.status_msg = f"JSON error: {exc}"
            return
        if not isinstance(data, dict):
            self.status_msg = "command must be a JSON object"
            return

        cmd = str(data.get("cmd", "")).lower().strip()
        logger.debug("execute_command: cmd=%s", cmd)
        try:
            if cmd == "reset":
                self.reset()
            elif cmd == "wind":
                self.add_wind(data.get("force"))
            elif cmd == "deform":
                self._cmd_deform(data)
            elif cmd == "add":
                self._cmd_add(data)
            elif cmd == "remove":
                self._cmd_remove(data)
            elif cmd == "clear":
                self.clear_bodies()
            elif cmd == "move":
                self.move_body(int(data["index"]), [float(c) for c in data["pos"]])
            elif cmd == "set":
                self.set_params(data.get("params", {}))
            elif cmd == "pause":
                self.toggle_pause()
            else:
                self.status_msg = (
                    f"Unknown cmd '{cmd}'. "
                    "Use reset/wind/deform/add/remove/clear/move/set/pause."
                )
        except (KeyError, TypeError, ValueError) as exc:
            # InvalidConfiguration is a ValueError
            logger.warning("Command '%s' rejected: %s", cmd, exc)
            self.status_msg = f"{cmd}: {exc}"

    def _cmd_deform(self, data: dict) -> None:
        force = [float(c) for c in data["force"]]
        if "index" in data:
            self.deform(int(data["index"]), force)
        else:
            self.deform_at(int(data["col"]), int(data["row"]), force)

    def _cmd_add(self, data: dict) -> None:
        kind = str(data.get("kind", "sphere"))
        if "pos" not in data:
            body = self.spawn_body(kind, float(data.get("size", 0.25)))
        elif kind == "sphere":
            body = self.add_sphere(data["pos"], float(data["radius"]),
                                   name=str(data.get("name", "")))
        elif kind == "box":
            body = self.add_box(data["pos"], float(data["half_extent"]),
                                name=str(data.get("name", "")))
        else:
            raise ValueError(f"unknown body kind '{kind}'")
        self.status_msg = f"add: {body.kind} '{body.name}'"

    def _cmd_remove(self, data: dict) -> None:
        name = data.get("name")
        if name is None:
            removed = self.remove_last_body()
        else:
            removed = self.bodies.find(str(name))
            if removed is not None:
                self.bodies.remove(removed)
        self.status_msg = ("remove: nothing to remove" if removed is None
                           else f"remove: '{removed.name}'")

    # ──────────────────────────────────────────────────────────────────────────
    # Scene scripts
    # ──────────────────────────────────────────────────────────────────────────

    def collect_scene_files(self) -> list:
        """Return sorted list of .py files from scripts/ dir + scene_script.py."""
        files = []
        scripts_dir = Path("scripts")
        if scripts_dir.is_dir():
            files.extend(sorted(scripts_dir.glob("*.py")))
        local = Path("scene_script.py")
        if local.exists():
            files.insert(0, local)
        return files

    def execute_scene(self, scene: dict) -> None:
        """Build a scene dict: cloth, bodies, params, then wind."""
        self._last_scene = scene

        if "params" in scene:
            self.set_params(scene["params"])

        cloth = scene.get("cloth", {})
        try:
            self._rebuild(
                float(cloth.get("width",  self.CLOTH_WIDTH)),
                float(cloth.get("height", self.CLOTH_HEIGHT)),
                int(cloth.get("cols", self.CLOTH_COLS)),
                int(cloth.get("rows", self.CLOTH_ROWS)),
                pin_top=bool(cloth.get("pin_top", True)),
            )
            self.bodies.clear()
            for bd in scene.get("bodies", []):
                self._cmd_add(bd)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Scene rejected: %s", exc)
            self.status_msg = f"Scene error: {exc}"
            return

        for gust in scene.get("wind", []):
            self.add_wind(gust)

        self.sim_time = 0.0
        self.frame = 0
        self.status_msg = (f"Scene: {self.mesh.cols}x{self.mesh.rows} cloth, "
                           f"{self.bodies.count()} body(ies).")
        logger.info(self.status_msg)

    def load_scene_file(self, path: str) -> None:
        """Load and execute a scene from a .py file defining ``SCENE``."""
        import importlib.util
        abs_path = os.path.abspath(path)
        if not os.path.exists(abs_path):
            self.status_msg = f"Scene not found: {abs_path}"
            logger.warning(self.status_msg)
            return
        spec = importlib.util.spec_from_file_location("_user_cloth_scene", abs_path)
        mod  = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(mod)
        except Exception as exc:
            self.status_msg = f"Scene error: {exc}"
            logger.warning("Could not import scene '%s': %s", abs_path, exc)
            return
        scene = getattr(mod, "SCENE", None)
        if scene is None:
            self.status_msg = f"No SCENE variable in {os.path.basename(abs_path)}"
            return
        self._last_scene_path = abs_path
        self.execute_scene(scene)

    def reload_scene(self) -> None:
        """Re-execute the last loaded scene."""
        if self._last_scene_path:
            self.load_scene_file(self._last_scene_path)
        elif self._last_scene:
            self.execute_scene(self._last_scene)
        else:
            self.status_msg = (
                "No scene loaded yet.  "
                "Create scene_script.py or call load_scene_file(path)."
            )

"""Drape — unpinned cloth falling over a sphere resting under its center"""

SCENE = {
    "cloth": {"width": 2.0, "height": 2.0, "cols": 20, "rows": 20, "pin_top": False},
    "bodies": [
        {"kind": "sphere", "name": "ball", "pos": [0.0, -1.2, 0.0], "radius": 0.5},
    ],
}

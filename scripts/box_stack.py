"""Obstacles — curtain swinging into a crate and a ball on the floor"""

SCENE = {
    "cloth": {"width": 2.0, "height": 2.0, "cols": 30, "rows": 20},
    "bodies": [
        {"kind": "box",    "name": "crate", "pos": [ 0.3, -1.5, 0.3], "half_extent": 0.3},
        {"kind": "sphere", "name": "ball",  "pos": [-0.5, -1.6, 0.2], "radius": 0.25},
    ],
    "wind": [
        [0.0, 0.0, 3.0],
    ],
}

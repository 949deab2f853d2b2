"""Curtain — pinned cloth with two superposed gusts and softer springs"""

SCENE = {
    "cloth": {"width": 2.0, "height": 2.0, "cols": 30, "rows": 20},
    "params": {
        "STIFFNESS":  0.6,
        "WIND_DECAY": 0.98,
    },
    "wind": [
        [0.0, 0.0, 2.0],
        [0.5, 0.0, 1.0],
    ],
}

# control/factory.py
from __future__ import annotations

from control.acc_config import AccConfig
from control.classical import ClassicalAcc
from control.command import AccController
from control.mpc import MpcAcc


def make_controller(config: AccConfig | dict | None = None) -> AccController:
    """Build the control law named by `config.controller_type` (chosen once, at startup)."""
    if config is None:
        config = AccConfig()
    if isinstance(config, dict):
        config = AccConfig.from_dict(config)

    if config.controller_type == "mpc":
        return MpcAcc(config)
    return ClassicalAcc(config)

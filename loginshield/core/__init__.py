"""Core module for the login shield."""
from loginshield.core.config import PolicyConfig, ShieldSettings, get_shield_settings
from loginshield.core.policy_gate import GateDecision, GateState, PolicyGate, build_gate

__all__ = [
    "PolicyConfig",
    "ShieldSettings",
    "get_shield_settings",
    "GateDecision",
    "GateState",
    "PolicyGate",
    "build_gate",
]

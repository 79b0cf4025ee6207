"""API v2 routers."""
from loginshield.api.v2 import attempts, login

__all__ = ["attempts", "login"]

# API Routers

from . import exchanges, health

__all__ = ["exchanges", "health"]

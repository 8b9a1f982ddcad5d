"""Web monitoring module."""
from .server import set_farm, start_web_server

__all__ = ["set_farm", "start_web_server"]

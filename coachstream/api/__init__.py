"""HTTP surface: the streaming turn endpoint and pattern acknowledgement."""

from .routes import Components, build_components, create_app

__all__ = ["Components", "build_components", "create_app"]

"""rpengine - OpenID Connect Relying Party protocol engine."""

__version__ = "0.1.0"

"""Multi-tenant hybrid knowledge retrieval engine."""

__version__ = "0.1.0"

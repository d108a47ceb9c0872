"""Optimization telemetry -> intelligence -> gated strategy rollout pipeline.

Submodules are imported lazily by their users; importing the package itself has no side effects
(no engine, no Celery app) so that tests can point `infrastructure.db` at their own database first.
"""

__version__ = "0.1.0"

__all__ = ["config", "errors", "models", "tasks"]

"""Issue triage: queue agent analyses of tracker issues and reconcile review state."""

__version__ = "0.3.0"

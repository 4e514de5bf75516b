"""Phase-ordered execution of feature tasks on coding-agent worker processes."""

__version__ = "0.1.0"

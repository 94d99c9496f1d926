"""weft: coordinate workspaces, locks and plan ownership for task repositories."""

__version__ = "0.1.0"

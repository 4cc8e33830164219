"""Clinical Timeline Engine: rule-based clinical narrative intelligence."""

__version__ = "0.1.0"

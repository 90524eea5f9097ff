"""salesbot - conversational sales assistant runtime."""

__version__ = "0.1.0"

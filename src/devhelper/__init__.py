"""Dev Helper Agent: ask questions about source code with a locally-running model."""

__version__ = "0.1.0"

"""Fleet report query engine: schema registry, expression validation, query compilation and report execution."""

__version__ = "1.0.0"

"""Apply chained hdiff update packages to a game installation."""

__version__ = "0.1.0"

"""PHP-FPM listen queue monitor for containerised hosts."""

__version__ = "0.1.0"

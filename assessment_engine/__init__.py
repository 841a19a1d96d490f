"""
Adaptive assessment assembly, scoring and psychometric validation engine.
"""

__version__ = "0.1.0"

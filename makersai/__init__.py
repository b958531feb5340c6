"""MakersAI Studio: AI generation of printable 3D models and laser cutting profiles."""

__version__ = "0.1.0"

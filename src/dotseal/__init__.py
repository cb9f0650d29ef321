# src/dotseal/__init__.py
"""dotseal: dotfiles synchronized through a git remote, encrypted at rest."""

__version__ = "0.1.0"

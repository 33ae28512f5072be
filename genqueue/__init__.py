"""
genqueue - job queue for distributing image generation across a pool of
Stable Diffusion backends.
"""

__version__ = "0.1.0"

"""
Layer 2 — Sharpness
Blur gating for candidate frames.
"""
from .analyzer import BLUR_THRESHOLD, SharpnessAnalyzer, SharpnessScore

__all__ = ['BLUR_THRESHOLD', 'SharpnessAnalyzer', 'SharpnessScore']

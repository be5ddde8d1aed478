"""
ILM - Information Lifecycle Management engine

Classifies warehouse partitions by age and temperature, matches them against
lifecycle policies, and moves them across storage tiers.
"""

try:
    from importlib.metadata import version

    __version__ = version("ilm")
except Exception:
    __version__ = "0.0.0"  # Fallback for development

"""Utilities for ILM."""

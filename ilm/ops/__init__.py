"""Operational HTTP surface for ILM."""

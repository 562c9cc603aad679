"""Utility modules: configuration, constants, validators and datetime helpers."""

"""Clinigate decision-support gateway package."""

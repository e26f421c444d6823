"""Setuptools build hooks for numdef."""

from __future__ import annotations

from setuptools import setup

# The project ships pure Python modules only, so the default command classes
# produce a ``py3-none-any`` wheel.
setup()

#!/usr/bin/env python
"""Setup script for older pip versions that cannot build from pyproject.toml."""

from setuptools import setup

if __name__ == "__main__":
    setup()

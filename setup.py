#!/usr/bin/env python
"""Setup script for twitchhelix-sdk.

This file is required for backwards compatibility with older pip versions.
The actual package configuration is in pyproject.toml.
"""

from setuptools import setup

setup()

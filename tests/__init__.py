"""Test package marker.

Making `tests/` a package gives test modules fully-qualified names, so
identically named files in different directories do not collide.
"""

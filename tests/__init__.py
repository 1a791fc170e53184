"""
map_align test suite

Structure:
- unit/: Unit tests for individual components and the end-to-end pipeline
  on synthetic floor-plan rasters (see unit/conftest.py)
"""

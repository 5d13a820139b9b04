"""Geo File Import & Transformation Pipeline.

Ingests shapefiles, DXF drawings, delimited coordinate text, XYZ point
clouds and GeoJSON, normalises them into canonical features with a
resolved coordinate reference system, derives a bounded preview, and
commits the selected features to an external import endpoint in
progress-tracked batches.
"""

__version__ = "0.1.0"

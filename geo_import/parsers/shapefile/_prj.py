"""Projection side-file (``.prj``) handling."""

from __future__ import annotations

import logging

from geo_import.crs.detection import srid_from_wkt

logger = logging.getLogger("geo_import.parsers.shapefile.prj")


def read_prj(raw: bytes | None) -> int | None:
    """Return the SRID declared by a ``.prj`` file, if recognisable."""
    if not raw:
        return None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")
    srid = srid_from_wkt(text)
    if srid is None:
        logger.warning("prj not recognised | length=%d", len(text))
    else:
        logger.debug("prj recognised | srid=%d", srid)
    return srid

"""osm2pmtiles: OpenStreetMap extract to PMTiles build pipeline."""

__all__ = ["__version__"]

__version__ = "0.3.0"

"""Module entrypoint for `python -m osm2pmtiles`."""

from __future__ import annotations

from osm2pmtiles.cli import main

if __name__ == "__main__":
    raise SystemExit(main())

"""Script entry point kept next to the converter archive.

``python subtitle_tonemap.py`` runs from a folder that also holds
``BDSup2Sub512.jar``; the converter lookup searches this script's directory.
The implementation lives in the package under ``subtitle_tonemap.cli``.
"""
from __future__ import annotations

from subtitle_tonemap.cli import main


if __name__ == "__main__":  # pragma: no cover - exercised via integration test
    raise SystemExit(main())

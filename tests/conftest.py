from __future__ import annotations

from pathlib import Path
import sys

SRC = Path(__file__).resolve().parents[1] / 'src'

# Prefer the checkout over any installed gruntforge.
if SRC.is_dir():
    sys.path[:] = [str(SRC)] + [item for item in sys.path if Path(item or '.').resolve() != SRC]

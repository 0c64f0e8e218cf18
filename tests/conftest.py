from __future__ import annotations

import os
import sys
from pathlib import Path


# Ensure `import jobrunner...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

# Tests read the shipped defaults regardless of the working directory.
os.environ.setdefault("JOBRUNNER_CONFIG_PATH", str(REPO_ROOT / "config" / "default.toml"))

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd


def ensure_dir(path: str | os.PathLike) -> str:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return str(p)


def save_df(df: pd.DataFrame, out_path: str, *, index: bool = False) -> str:
    ensure_dir(Path(out_path).parent)
    df.to_csv(out_path, index=index)
    return out_path


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def save_json(obj: Dict[str, Any], out_path: str) -> str:
    ensure_dir(Path(out_path).parent)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2, default=_jsonable)
    return out_path


def save_text(text: str, out_path: str) -> str:
    """Save a UTF-8 text file."""
    ensure_dir(Path(out_path).parent)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(text)
    return out_path


def collect_environment_info(packages: Optional[list[str]] = None) -> Dict[str, Any]:
    """Collect a lightweight reproducibility record (system + key package versions)."""
    import datetime
    import platform
    import sys
    from importlib import metadata as importlib_metadata

    if packages is None:
        packages = ["numpy", "pandas", "scipy", "statsmodels"]

    pkg_versions: Dict[str, Any] = {}
    for pkg in packages:
        try:
            pkg_versions[pkg] = importlib_metadata.version(pkg)
        except importlib_metadata.PackageNotFoundError:
            pkg_versions[pkg] = None

    return {
        "timestamp_utc": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "python": {"version": sys.version, "executable": sys.executable},
        "platform": {
            "platform": platform.platform(),
            "system": platform.system(),
            "machine": platform.machine(),
        },
        "cpu_count": os.cpu_count(),
        "packages": pkg_versions,
    }


def pip_freeze() -> str:
    """Return `pip freeze` output as a string (best-effort)."""
    import subprocess
    import sys

    try:
        return subprocess.check_output([sys.executable, "-m", "pip", "freeze"], text=True)
    except (OSError, subprocess.CalledProcessError) as e:
        return f"# pip freeze failed: {e}\n"


def resolve_input_csv(input_csv: str) -> str:
    if not os.path.isfile(input_csv):
        raise FileNotFoundError(f"Input CSV not found: {input_csv}")
    return input_csv

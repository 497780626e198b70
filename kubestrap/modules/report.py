import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Union

from kubestrap.modules.models import RunReport

logger = logging.getLogger("kubestrap.report")


def save_report(report: RunReport, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(asdict(report), f, indent=2)
    logger.debug(f"Saved run report to {path}")
    return path


def load_report(path: Union[str, Path]) -> Optional[RunReport]:
    """Return the last persisted run report, or None if there is none."""
    path = Path(path)
    if not path.exists():
        return None
    with open(path, "r") as f:
        data = json.load(f)
    return RunReport(**data)

import json
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List


@dataclass
class StageArtifact:
    stage_name: str
    status: str
    elapsed_seconds: float
    counts: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def save_artifact(artifact_dir: Path, payload: Dict[str, Any], filename: str = "summary.json") -> Path:
    artifact_dir.mkdir(parents=True, exist_ok=True)
    output_path = artifact_dir / filename
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    return output_path


def save_text(artifact_dir: Path, lines: List[str], filename: str = "summary.txt") -> Path:
    artifact_dir.mkdir(parents=True, exist_ok=True)
    output_path = artifact_dir / filename
    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return output_path

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml


DEFAULT_REFERENCE = "/path/to/refdata-gex-GRCh38-2024-A"
DEFAULT_DOWNLOAD_METHODS = ("ena-ftp", "aws-http", "prefetch")
DEFAULT_INDEX_HINTS = ("10x", "10X", "Chromium")

# environment variable -> PipelineConfig field
ENV_OVERRIDES = {
    "PARALLEL_JOBS": "parallel_jobs",
    "THREADS_PER_JOB": "threads_per_job",
    "CUSTOM_OUTPUT_DIR": "output_dir",
    "CELLRANGER_REF": "reference_path",
    "KEEP_FASTQS": "keep_inputs",
    "RECOVER_TECHNICAL_READS": "recover_technical_reads",
    "FIX_FASTQ_FORMAT": "fix_fastq_format",
    "DOWNLOAD_TIMEOUT": "download_timeout",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass
class ExecutorConfig:
    type: str = "local"
    conda_executable: Optional[str] = None
    envs: Dict[str, str] = field(default_factory=dict)


@dataclass
class ManifestConfig:
    run_column: int = 0
    sample_column: int = 14
    header_sentinel: str = "Run"


@dataclass
class PipelineConfig:
    base_dir: Path
    manifest_path: Path
    status_dir: Path
    output_dir: Path
    artifacts_root: Path
    reference_path: Path = Path(DEFAULT_REFERENCE)
    parallel_jobs: int = 4
    threads_per_job: int = 12
    keep_inputs: bool = False
    recover_technical_reads: bool = False
    fix_fastq_format: bool = True
    download_timeout: int = 3600
    quant_timeout: int = 86400
    quant_memory_gb: int = 128
    validate_records: int = 1000
    repair_validate_records: int = 5000
    repair_max_bytes: int = 10_000_000_000
    download_methods: List[str] = field(default_factory=lambda: list(DEFAULT_DOWNLOAD_METHODS))
    index_hint_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_INDEX_HINTS))
    index_hint_case_sensitive: bool = True
    progress: bool = True
    manifest: ManifestConfig = field(default_factory=ManifestConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    @property
    def work_dir(self) -> Path:
        """Directory holding the per-run download folders."""
        return self.base_dir

    def run_dir(self, run_id: str) -> Path:
        return self.work_dir / run_id

    def sample_dir(self, sample_key: str) -> Path:
        return self.output_dir / sample_key

    def env_for(self, tool: str) -> Optional[str]:
        return (self.executor.envs or {}).get(tool)

    def matches_index_hint(self, sample_key: str) -> bool:
        """True when the sample name suggests a chip-based (10x) library."""
        if self.index_hint_case_sensitive:
            return any(p in sample_key for p in self.index_hint_patterns)
        lowered = sample_key.lower()
        return any(p.lower() in lowered for p in self.index_hint_patterns)

    def describe(self) -> Dict[str, Any]:
        return {
            "base_dir": str(self.base_dir),
            "manifest_path": str(self.manifest_path),
            "output_dir": str(self.output_dir),
            "status_dir": str(self.status_dir),
            "reference_path": str(self.reference_path),
            "parallel_jobs": self.parallel_jobs,
            "threads_per_job": self.threads_per_job,
            "keep_inputs": self.keep_inputs,
            "recover_technical_reads": self.recover_technical_reads,
            "fix_fastq_format": self.fix_fastq_format,
            "download_timeout": self.download_timeout,
            "quant_timeout": self.quant_timeout,
        }


def parse_bool(value: Any, *, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean (true/false), got {value!r}")


def parse_int(value: Any, *, name: str = "value", minimum: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if minimum is not None and number < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {number}")
    return number


_PATH_FIELDS = {"manifest_path", "status_dir", "output_dir", "artifacts_root", "reference_path"}
_BOOL_FIELDS = {
    "keep_inputs",
    "recover_technical_reads",
    "fix_fastq_format",
    "index_hint_case_sensitive",
    "progress",
}
_INT_FIELDS = {
    "parallel_jobs": 1,
    "threads_per_job": 1,
    "download_timeout": 1,
    "quant_timeout": 1,
    "quant_memory_gb": 1,
    "validate_records": 1,
    "repair_validate_records": 1,
    "repair_max_bytes": 1,
}
_LIST_FIELDS = {"download_methods", "index_hint_patterns"}


class ConfigLoader:
    """Builds a PipelineConfig from defaults, an optional YAML/JSON file and the environment."""

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        base_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.path = path
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.environ = os.environ if environ is None else environ

    def _read_file(self) -> Dict[str, Any]:
        if not self.path:
            return {}
        if not self.path.exists():
            raise ConfigError(f"Config file not found: {self.path}")
        with self.path.open("r", encoding="utf-8") as f:
            if self.path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {self.path}")
        return data

    def load(self) -> PipelineConfig:
        data = self._read_file()
        config_dir = self.path.parent if self.path else self.base_dir

        base_dir = data.get("base_dir")
        base = self.base_dir
        if base_dir:
            base = Path(base_dir)
            if not base.is_absolute():
                base = (config_dir / base).resolve()

        def _abspath(value: Any, relative_to: Path) -> Path:
            p = Path(str(value)).expanduser()
            if not p.is_absolute():
                p = (relative_to / p).resolve()
            return p

        cfg = PipelineConfig(
            base_dir=base,
            manifest_path=base / "SraRunTable.txt",
            status_dir=base / ".status",
            output_dir=base,
            artifacts_root=base / ".artifacts",
        )

        known = {f.name for f in fields(PipelineConfig)}
        for key, value in data.items():
            if key in {"base_dir", "manifest", "executor"}:
                continue
            if key not in known:
                raise ConfigError(f"Unknown configuration key: {key}")
            self._apply(cfg, key, value, lambda v: _abspath(v, config_dir))

        manifest_data = data.get("manifest") or {}
        cfg.manifest = ManifestConfig(
            run_column=parse_int(manifest_data.get("run_column", 0), name="manifest.run_column", minimum=0),
            sample_column=parse_int(
                manifest_data.get("sample_column", 14), name="manifest.sample_column", minimum=0
            ),
            header_sentinel=str(manifest_data.get("header_sentinel", "Run")),
        )

        executor_data = data.get("executor") or {}
        cfg.executor = ExecutorConfig(
            type=executor_data.get("type", "local"),
            conda_executable=executor_data.get("conda_executable"),
            envs=dict(executor_data.get("envs") or {}),
        )

        for env_name, key in ENV_OVERRIDES.items():
            raw = self.environ.get(env_name)
            if raw is None or raw == "":
                continue
            self._apply(cfg, key, raw, lambda v: _abspath(v, self.base_dir), source=env_name)

        return cfg

    @staticmethod
    def _apply(cfg: PipelineConfig, key: str, value: Any, to_path, source: Optional[str] = None) -> None:
        name = source or key
        if key in _PATH_FIELDS:
            setattr(cfg, key, to_path(value))
        elif key in _BOOL_FIELDS:
            setattr(cfg, key, parse_bool(value, name=name))
        elif key in _INT_FIELDS:
            setattr(cfg, key, parse_int(value, name=name, minimum=_INT_FIELDS[key]))
        elif key in _LIST_FIELDS:
            if isinstance(value, str):
                value = value.split()
            if not isinstance(value, (list, tuple)):
                raise ConfigError(f"{name} must be a list, got {value!r}")
            setattr(cfg, key, [str(v) for v in value])
        else:
            raise ConfigError(f"Configuration key {name} cannot be overridden")

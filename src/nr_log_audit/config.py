from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .util.errors import ConfigError
from .util.time import utc_now_iso, utc_stamp

REGIONS = {
    "us": "https://api.newrelic.com/graphql",
    "eu": "https://api.eu.newrelic.com/graphql",
}
DEFAULT_REGION = "us"
DEFAULT_TIMEOUT = 30.0
DEFAULT_WORKERS = 4
DEFAULT_PAGE_SIZE = 2000
OUTPUT_FORMATS = ("json", "csv")
ENV_PREFIX = "NR_AUDIT_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Setting:
    """One configurable key. kind is str, int, float, bool, path or list."""

    key: str
    kind: str = "str"
    default: Any = None

    @property
    def env_var(self) -> str:
        return ENV_PREFIX + self.key.upper()


SETTINGS: Tuple[Setting, ...] = (
    Setting("api_key"),
    Setting("region", default=DEFAULT_REGION),
    Setting("endpoint"),
    Setting("outdir", "path"),
    Setting("timeout", "float", DEFAULT_TIMEOUT),
    Setting("workers", "int", DEFAULT_WORKERS),
    Setting("page_size", "int", DEFAULT_PAGE_SIZE),
    Setting("tag"),
    Setting("index_pattern"),
    Setting("ca_bundle", "path"),
    Setting("insecure", "bool", False),
    Setting("formats", "list", OUTPUT_FORMATS),
    Setting("progress", "bool", True),
    Setting("json_logs", "bool", False),
    Setting("log_level", default="INFO"),
)
SETTINGS_BY_KEY = {s.key: s for s in SETTINGS}

_KIND_LABELS = {
    "str": "a string",
    "int": "an integer",
    "float": "a number",
    "bool": "a boolean",
    "path": "a string path",
    "list": "a list of strings or a comma-separated string",
}


@dataclass(frozen=True)
class RunConfig:
    outdir: Path
    region: str = DEFAULT_REGION
    endpoint: str = REGIONS[DEFAULT_REGION]
    formats: List[str] = field(default_factory=lambda: list(OUTPUT_FORMATS))
    progress: bool = True
    json_logs: bool = False
    log_level: str = "INFO"

    # never logged; dump_config output is redacted on write
    api_key: Optional[str] = field(default=None, repr=False)

    timeout: float = DEFAULT_TIMEOUT
    ca_bundle: Optional[Path] = None
    insecure: bool = False

    workers: int = DEFAULT_WORKERS
    page_size: int = DEFAULT_PAGE_SIZE
    tag: Optional[str] = None
    index_pattern: Optional[str] = None

    collected_at: str = field(default_factory=utc_now_iso)

    @property
    def tls_verify(self) -> Union[bool, str]:
        """Value for requests' verify=: False, a CA bundle path, or True."""
        if self.insecure:
            return False
        if self.ca_bundle:
            return str(self.ca_bundle)
        return True


def _coerce(setting: Setting, value: Any, origin: str) -> Any:
    """
    Convert a raw value from any layer to the setting's type.
    Returns None for blank strings so the key falls through to a lower layer.
    """
    kind = setting.kind
    if isinstance(value, str) and not value.strip():
        return None
    if kind == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
    elif kind == "int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                pass
    elif kind == "float":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
    elif kind == "list":
        items = value.split(",") if isinstance(value, str) else value
        if isinstance(items, (list, tuple)) and all(isinstance(v, str) for v in items):
            return [v.strip().lower() for v in items if v.strip()]
    elif kind == "path":
        if isinstance(value, (str, Path)):
            return Path(value)
    elif isinstance(value, str):
        return value.strip()
    raise ValueError(f"{origin}: '{setting.key}' must be {_KIND_LABELS[kind]}")


def _layer(values: Mapping[str, Any], origin: str) -> Dict[str, Any]:
    """Typed view of one configuration source; unset keys are left out."""
    out: Dict[str, Any] = {}
    for setting in SETTINGS:
        raw = values.get(setting.key)
        if raw is None:
            continue
        value = _coerce(setting, raw, origin)
        if value is not None:
            out[setting.key] = value
    return out


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must hold a mapping at the top level")
    return data


def _file_layer(path: Path) -> Dict[str, Any]:
    data = _parse_config_file(path)
    unknown = sorted(set(data) - set(SETTINGS_BY_KEY))
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(map(str, unknown))}")
    return _layer(data, f"config file {path}")


def _env_layer(environ: Mapping[str, str]) -> Dict[str, Any]:
    raw = {s.key: environ[s.env_var] for s in SETTINGS if s.env_var in environ}
    return _layer(raw, "environment")


def _timestamp_dir(base: Optional[Path]) -> Path:
    return (base or Path("out")) / utc_stamp()


def _resolve_endpoint(region: str, endpoint: Optional[str]) -> str:
    if endpoint:
        return endpoint
    try:
        return REGIONS[region]
    except KeyError:
        raise ConfigError(
            f"Unknown region '{region}'. Valid options are: {', '.join(sorted(REGIONS))}"
        ) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nr-log-audit",
        description="Audit which New Relic infrastructure hosts are (not) sending logs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # flags shared by every subcommand: credentials, transport, logging
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="YAML or JSON file with any of the settings below")
        p.add_argument("--api-key", default=None, help="New Relic User API key (prefer NR_AUDIT_API_KEY)")
        p.add_argument(
            "--region",
            default=None,
            choices=sorted(REGIONS),
            help=f"NerdGraph region (default: {DEFAULT_REGION})",
        )
        p.add_argument("--endpoint", default=None, help="Explicit NerdGraph URL (overrides --region)")
        p.add_argument(
            "--timeout", type=float, default=None, help=f"Per-request timeout in seconds (default {DEFAULT_TIMEOUT:g})"
        )
        p.add_argument("--ca-bundle", type=Path, default=None, help="PEM bundle of trusted CA certificates")
        p.add_argument(
            "--insecure",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Disable TLS certificate verification (unsafe)",
        )
        p.add_argument("--json-logs", action=argparse.BooleanOptionalAction, default=None, help="Log JSON lines")
        p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")

    p_run = subparsers.add_parser("run", help="Reconcile inventory hosts against log-emitting hosts")
    add_common(p_run)
    p_run.add_argument("--outdir", type=Path, default=None, help="Base directory for run output (default out/)")
    p_run.add_argument(
        "--workers", type=int, default=None, help=f"Max parallel log queries (default {DEFAULT_WORKERS})"
    )
    p_run.add_argument(
        "--page-size",
        type=int,
        default=None,
        help=f"Hostnames requested per log query page (default {DEFAULT_PAGE_SIZE})",
    )
    p_run.add_argument("--tag", default=None, help="Only inventory hosts with this tag, as key=value")
    p_run.add_argument("--index-pattern", default=None, help="Only logs whose indexname matches this LIKE pattern")
    p_run.add_argument("--format", dest="formats", default=None, help="Comma-separated outputs: json,csv")
    p_run.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show progress bars when attached to a terminal",
    )

    add_common(subparsers.add_parser("validate-key", help="Check the API key by listing accessible accounts"))
    add_common(subparsers.add_parser("list-accounts", help="List accounts accessible to the API key"))
    add_common(subparsers.add_parser("list-regions", help="List known NerdGraph regions"))

    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Resolve the command line into (command, RunConfig).

    Each key takes the first value found in: CLI flag, NR_AUDIT_<KEY>
    environment variable, --config file, built-in default. Values that fail
    type conversion raise ValueError; values of the right type that make no
    sense for the audit (unknown region or format, workers < 1, ...) raise
    ConfigError.
    """
    ns = args if args is not None else build_parser().parse_args(argv)

    merged: Dict[str, Any] = {s.key: s.default for s in SETTINGS}
    if getattr(ns, "config", None):
        merged.update(_file_layer(Path(ns.config)))
    merged.update(_env_layer(os.environ if environ is None else environ))
    merged.update(_layer({s.key: getattr(ns, s.key, None) for s in SETTINGS}, "command line"))

    command = ns.command
    region = merged["region"].lower()
    endpoint = _resolve_endpoint(region, merged["endpoint"])

    formats = list(merged["formats"]) or list(OUTPUT_FORMATS)
    unknown_formats = sorted(set(formats) - set(OUTPUT_FORMATS))
    if unknown_formats:
        raise ConfigError(f"Unknown output format(s): {', '.join(unknown_formats)}")

    if merged["workers"] < 1:
        raise ConfigError("workers must be at least 1")
    if merged["page_size"] < 1:
        raise ConfigError("page_size must be at least 1")
    if merged["timeout"] <= 0:
        raise ConfigError("timeout must be positive")

    # only run writes files; other commands keep outdir for the summary dump
    outdir = _timestamp_dir(merged["outdir"]) if command == "run" else merged["outdir"] or Path.cwd()

    cfg = RunConfig(
        outdir=outdir,
        region=region,
        endpoint=endpoint,
        formats=formats,
        progress=merged["progress"],
        json_logs=merged["json_logs"],
        log_level=merged["log_level"].upper(),
        api_key=merged["api_key"],
        timeout=merged["timeout"],
        ca_bundle=merged["ca_bundle"],
        insecure=merged["insecure"],
        workers=merged["workers"],
        page_size=merged["page_size"],
        tag=merged["tag"],
        index_pattern=merged["index_pattern"],
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    """Plain-typed copy of cfg for run_summary.json. Pass through sanitize_for_json before writing."""
    out: Dict[str, Any] = {s.key: getattr(cfg, s.key) for s in SETTINGS}
    out.update(
        {
            "outdir": str(cfg.outdir),
            "ca_bundle": str(cfg.ca_bundle) if cfg.ca_bundle else None,
            "formats": list(cfg.formats),
            "collected_at": cfg.collected_at,
        }
    )
    return out

"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before the engine starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

_AMOUNT_RE = re.compile(r"^(\d+(\.\d+)?%?)$")


# ===== Policy Schema =====
class LoopConfig(BaseModel):
    """Polling intervals for the engine tasks"""
    tick_seconds: float = Field(default=5.0, gt=0, description="Arbitration tick interval")
    pattern_scan_seconds: float = Field(default=10.0, gt=0, description="Pattern guard scan interval")
    concentration_scan_seconds: float = Field(default=10.0, gt=0, description="Concentration guard scan interval")
    jitter_pct: float = Field(default=0.0, ge=0, le=20, description="Random extra sleep as % of interval")
    signal_bus_size: int = Field(default=256, gt=0, description="Guard to engine queue capacity")


class ExitsConfig(BaseModel):
    """Fixed exits evaluated by the main tick"""
    target_profit_pct: Optional[float] = Field(default=200.0, gt=0, description="Sell at or above this profit %")
    max_hold_hours: Optional[float] = Field(default=24.0, gt=0, description="Sell positions older than this")
    sell_amount: str = Field(default="100%", description="Amount spec passed to the broker")

    @field_validator('sell_amount')
    @classmethod
    def validate_sell_amount(cls, v: str) -> str:
        """Accept "100%", a percentage string, or a numeric UI amount"""
        text = str(v).strip()
        if not _AMOUNT_RE.match(text):
            raise ValueError(f"sell_amount must be a percentage like '100%' or a number, got {v!r}")
        if text.endswith("%") and not 0 < float(text[:-1]) <= 100:
            raise ValueError(f"sell_amount percentage must be 0 < pct <= 100, got {v!r}")
        return text


class TrailingConfig(BaseModel):
    """Gap trailing stop and profit-lock ladder"""
    mark_pct: float = Field(default=25.0, ge=0, description="Profit % that activates trailing")
    step_trigger_delta_pct: float = Field(default=100.0, gt=0, description="Extra profit % per ratchet step")
    lock_step_pct: float = Field(default=25.0, ge=0, description="Locked profit added per step after the first")
    start_lock_pct: float = Field(default=10.0, ge=0, description="Locked profit at the first step")
    lock_start_at_pct: Optional[float] = Field(default=400.0, gt=0, description="Profit % that enables the lock ladder (null disables)")
    lock_interval_pct: float = Field(default=200.0, gt=0, description="Lock ladder rung size")


class CollapseConfig(BaseModel):
    """Peak-based collapse thresholds (null disables a signal)"""
    price_drop_pct: Optional[float] = Field(default=55.0, gt=0, le=100)
    liquidity_drop_pct: Optional[float] = Field(default=60.0, gt=0, le=100)
    supply_spike_pct: Optional[float] = Field(default=80.0, gt=0)


class PatternGuardSchema(BaseModel):
    """Multi-timeframe pattern confirmation guard"""
    enabled: bool = True
    batch_size: int = Field(default=4, gt=0)
    coarse_timeframe: str = Field(default="5m", pattern="^(1m|5m|15m|1h|4h|1d)$")
    coarse_limit: int = Field(default=120, gt=0)
    fine_timeframe: str = Field(default="1m", pattern="^(1m|5m|15m|1h|4h|1d)$")
    fine_limit: int = Field(default=60, ge=2)
    avg_n: int = Field(default=20, gt=0)
    vol_mult: float = Field(default=1.0, gt=0)
    body_ratio: float = Field(default=0.6, gt=0, le=1)
    m1_vol_avg_n: int = Field(default=20, ge=2)
    m1_vol_spike_mult: float = Field(default=1.5, gt=0)
    cooldown_seconds: float = Field(default=30.0, ge=0)


class ConcentrationGuardSchema(BaseModel):
    """Top-holder concentration guard"""
    enabled: bool = True
    high_pct: float = Field(default=30.0, gt=0, le=100)
    low_profit_pct: float = Field(default=60.0)
    target_profit_pct: float = Field(default=110.0)
    fraction_input: bool = False


class SellRetryConfig(BaseModel):
    """Behaviour after unconfirmed sells"""
    backoff_after_failures: Optional[int] = Field(default=None, ge=1, description="Start deferring after N failures (null = every tick)")
    max_backoff_ticks: int = Field(default=8, ge=1)
    alert_after_failures: Optional[int] = Field(default=3, ge=1)


class SellSuccessConfig(BaseModel):
    accept_dry_run: bool = False


class HeartbeatConfig(BaseModel):
    enabled: bool = True
    interval_minutes: float = Field(default=60.0, gt=0)


class ReportConfig(BaseModel):
    enabled: bool = True
    interval_minutes: float = Field(default=45.0, gt=0)
    max_concurrency: int = Field(default=3, gt=0)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    loop: LoopConfig = Field(default_factory=LoopConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    trailing: TrailingConfig = Field(default_factory=TrailingConfig)
    collapse: CollapseConfig = Field(default_factory=CollapseConfig)
    pattern_guard: PatternGuardSchema = Field(default_factory=PatternGuardSchema)
    concentration_guard: ConcentrationGuardSchema = Field(default_factory=ConcentrationGuardSchema)
    sell_retry: SellRetryConfig = Field(default_factory=SellRetryConfig)
    sell_success: SellSuccessConfig = Field(default_factory=SellSuccessConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = Field(default="exit-engine", min_length=1)
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = "logs/exit-engine.log"


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9110, gt=0, lt=65536)
    health_enabled: bool = True
    health_port: int = Field(default=8090, gt=0, lt=65536)
    health_stale_seconds: float = Field(default=120.0, gt=0)
    alerts_enabled: bool = True
    alerts: Dict[str, Any] = Field(default_factory=dict)


class StateConfig(BaseModel):
    positions_file: str = Field(default="data/active_positions.json", min_length=1)
    lock_dir: str = Field(default="data", min_length=1)


class EndpointConfig(BaseModel):
    """One HTTP collaborator; secrets come from `*_env` keys or ${ENV} values"""
    model_config = {"extra": "allow"}

    url: Optional[str] = None
    url_env: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)


class EndpointsConfig(BaseModel):
    price: EndpointConfig = Field(default_factory=EndpointConfig)
    candles: EndpointConfig = Field(default_factory=EndpointConfig)
    rpc: EndpointConfig = Field(default_factory=EndpointConfig)
    broker: EndpointConfig = Field(default_factory=EndpointConfig)

    @field_validator('price', 'broker')
    @classmethod
    def validate_required_url(cls, v: EndpointConfig) -> EndpointConfig:
        """Price oracle and broker have no default location"""
        if not (v.url or v.url_env):
            raise ValueError("url or url_env is required")
        return v


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    endpoints: EndpointsConfig


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict (empty file -> {}).

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed or not a mapping
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{file_path} must contain a mapping at the top level")
    return data


def _validate_file(config_dir: Path, filename: str, schema) -> Tuple[List[str], Optional[Dict[str, Any]]]:
    errors: List[str] = []
    try:
        config = load_yaml_file(config_dir / filename)
        model = schema(**config)
        logger.info(f"{filename} validation passed")
        return errors, model.model_dump()
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors, None


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(Path(config_dir), "policy.yaml", PolicySchema)[0]


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(Path(config_dir), "app.yaml", AppSchema)[0]


def validate_sanity_checks(app: Dict[str, Any], policy: Dict[str, Any]) -> List[str]:
    """Cross-field consistency checks that schemas cannot express."""
    errors: List[str] = []

    trailing = policy["trailing"]
    first_step = trailing["mark_pct"] + trailing["step_trigger_delta_pct"]
    if trailing["start_lock_pct"] >= first_step:
        errors.append(
            f"policy.yaml: trailing.start_lock_pct ({trailing['start_lock_pct']}) must be below the first "
            f"step trigger ({first_step}); every ratchet would sell immediately"
        )

    conc = policy["concentration_guard"]
    if conc["low_profit_pct"] > conc["target_profit_pct"]:
        errors.append(
            "policy.yaml: concentration_guard.low_profit_pct must not exceed target_profit_pct"
        )

    if policy["sell_success"]["accept_dry_run"] and app["app"]["mode"] == "LIVE":
        errors.append("policy.yaml: sell_success.accept_dry_run cannot be enabled in LIVE mode")

    retry = policy["sell_retry"]
    if retry["backoff_after_failures"] is not None and retry["max_backoff_ticks"] < 1:
        errors.append("policy.yaml: sell_retry.max_backoff_ticks must be >= 1 when backoff is enabled")

    return errors


def load_validated_configs(config_dir: str = "config") -> Tuple[List[str], Dict[str, Any], Dict[str, Any]]:
    """
    Validate and load both files with schema defaults filled in.

    Returns:
        (errors, app_config, policy_config); the configs are empty dicts when
        any error was found
    """
    config_path = Path(config_dir)

    app_errors, app = _validate_file(config_path, "app.yaml", AppSchema)
    policy_errors, policy = _validate_file(config_path, "policy.yaml", PolicySchema)
    all_errors = app_errors + policy_errors

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(app, policy))

    if all_errors:
        logger.error(f"{len(all_errors)} validation error(s) found")
        return all_errors, {}, {}

    logger.info("All config files validated successfully")
    return [], app, policy


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Returns:
        List of all error messages (empty if all valid)
    """
    return load_validated_configs(config_dir)[0]


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)

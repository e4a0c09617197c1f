"""
Chart Configuration Validation
==============================
Schema validation for control chart configurations using pydantic.

Key Principle: Fail fast on bad configs. A typo in a method name should
raise an immediate, clear error - not silently produce a different chart.

Features:
- Enumerated options for estimation method and threshold rule
- Value range constraints (far, ic_arl, lambda)
- Cross-field validation (exactly one of far / ic_arl)
- Loading from JSON or YAML files
- Pydantic errors translated to InvalidConfiguration
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
import json

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import InvalidConfiguration


class EstimationMethod(str, Enum):
    """How the in-control mean and covariance are estimated."""
    CLASSICAL = "classical"   # Sample mean / unbiased sample covariance
    ROBUST = "robust"         # Reweighted minimum covariance determinant


class ThresholdRule(str, Enum):
    """How the T² control limit is derived."""
    PARAMETRIC = "parametric"         # F-distribution quantile
    NONPARAMETRIC = "nonparametric"   # KDE quantile of baseline T²


class ChartType(str, Enum):
    T2 = "t2"
    MEWMA = "mewma"


def _parse_enum(enum_cls, value: Any, parameter: str):
    if isinstance(value, str):
        value = value.strip().lower()
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise InvalidConfiguration(
            f"Invalid {parameter} '{value}'. Must be one of {allowed}",
            parameter=parameter,
            value=value,
        ) from None


def parse_estimation_method(value: Union[str, EstimationMethod]) -> EstimationMethod:
    """Coerce a method selector, raising InvalidConfiguration on unknown values."""
    return _parse_enum(EstimationMethod, value, 'method')


def parse_threshold_rule(value: Union[str, ThresholdRule]) -> ThresholdRule:
    """Coerce a threshold-rule selector, raising InvalidConfiguration on unknown values."""
    return _parse_enum(ThresholdRule, value, 'threshold_rule')


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class _ChartConfigBase(BaseModel):
    model_config = ConfigDict(extra='forbid', populate_by_name=True, frozen=True)

    method: EstimationMethod = EstimationMethod.CLASSICAL
    random_state: Optional[int] = 0   # Seed for the MCD subset search
    support_fraction: Optional[float] = Field(default=None, gt=0, le=1)

    @field_validator('method', mode='before')
    @classmethod
    def normalise_method(cls, v):
        return parse_estimation_method(v)


class T2ChartConfig(_ChartConfigBase):
    """Hotelling T² chart settings."""
    threshold_rule: ThresholdRule = ThresholdRule.PARAMETRIC
    far: Optional[float] = Field(default=None, gt=0, lt=1)   # False alarm rate
    ic_arl: Optional[float] = Field(default=None, gt=1)     # In-control ARL

    @field_validator('threshold_rule', mode='before')
    @classmethod
    def normalise_rule(cls, v):
        return parse_threshold_rule(v)

    @model_validator(mode='after')
    def check_single_target(self):
        if (self.far is None) == (self.ic_arl is None):
            raise ValueError("Exactly one of far or ic_arl must be given")
        return self

    @property
    def prob(self) -> float:
        """Target in-control coverage probability of the limit."""
        if self.ic_arl is not None:
            return 1.0 - 1.0 / self.ic_arl
        return 1.0 - self.far


class MEWMAChartConfig(_ChartConfigBase):
    """MEWMA chart settings."""
    lam: float = Field(alias='lambda', gt=0, le=1)   # Smoothing constant
    ic_arl: float = Field(gt=1)


CONFIG_MODELS = {
    ChartType.T2: T2ChartConfig,
    ChartType.MEWMA: MEWMAChartConfig,
}


def _translate_error(e: ValidationError, chart_type: ChartType) -> InvalidConfiguration:
    first = e.errors()[0]
    loc = first.get('loc') or ()
    parameter = str(loc[0]) if loc else None
    value = first.get('input')
    if parameter is None or isinstance(value, dict):
        value = None
    lines = []
    for err in e.errors():
        where = '.'.join(str(part) for part in err.get('loc', ())) or chart_type.value
        msg = err.get('msg')
        bad = err.get('input')
        # Model-level and missing-field errors carry the whole settings dict
        if err.get('loc') and not isinstance(bad, dict) and repr(bad) not in msg:
            msg = f"{msg} (got {bad!r})"
        lines.append(f"{where}: {msg}")
    message = f"Invalid {chart_type.value} chart configuration:\n  - " + "\n  - ".join(lines)
    return InvalidConfiguration(message, parameter=parameter, value=value)


def validate_chart_config(
    config: Union[Dict[str, Any], BaseModel],
    chart_type: Union[str, ChartType],
) -> Union[T2ChartConfig, MEWMAChartConfig]:
    """
    Validate a chart configuration.

    Args:
        config: Dict of settings, or an already-built config model
        chart_type: 't2' or 'mewma'

    Returns:
        Validated, immutable config model

    Raises:
        InvalidConfiguration: If any field is unknown, missing or out of range
    """
    chart_type = _parse_enum(ChartType, chart_type, 'chart_type')
    model_cls = CONFIG_MODELS[chart_type]

    if isinstance(config, model_cls):
        return config
    if isinstance(config, BaseModel):
        config = config.model_dump(by_alias=True)

    try:
        return model_cls.model_validate(config)
    except ValidationError as e:
        raise _translate_error(e, chart_type) from e


def load_chart_config(
    path: Union[str, Path],
    chart_type: Union[str, ChartType],
) -> Union[T2ChartConfig, MEWMAChartConfig]:
    """
    Load and validate a chart configuration from a JSON or YAML file.

    The file may hold the settings directly, or a mapping with a 't2'
    and/or 'mewma' section.

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidConfiguration: If the file cannot be parsed or fails validation
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix.lower() in ('.yaml', '.yml'):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InvalidConfiguration(f"Cannot parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidConfiguration(f"Configuration in {path} must be a mapping")

    key = _parse_enum(ChartType, chart_type, 'chart_type').value
    section = data.get(key, data)
    return validate_chart_config(section, chart_type)

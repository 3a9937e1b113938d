"""Built-in workload presets and the custom template builder."""

import dataclasses
import logging
from typing import Any, Dict, List, Mapping, Optional

from winlab.models import (
    ApplicationServerTemplate,
    CustomTemplate,
    DatabaseServerTemplate,
    DomainControllerTemplate,
    TemplateSpec,
    ValidationError,
    VDITemplate,
    WebServerTemplate,
    WorkloadType,
)

logger = logging.getLogger(__name__)

PRESETS: Dict[WorkloadType, TemplateSpec] = {
    WorkloadType.DOMAIN_CONTROLLER: DomainControllerTemplate(
        cpu_count=2, memory_mb=4096, storage_gb=80, adapter_count=1, dynamic_memory=False
    ),
    WorkloadType.APPLICATION_SERVER: ApplicationServerTemplate(
        cpu_count=4, memory_mb=8192, storage_gb=120, adapter_count=2, dynamic_memory=True
    ),
    WorkloadType.DATABASE_SERVER: DatabaseServerTemplate(
        cpu_count=8,
        memory_mb=16384,
        storage_gb=120,
        data_storage_gb=500,
        log_storage_gb=100,
        adapter_count=2,
        dynamic_memory=False,
    ),
    WorkloadType.WEB_SERVER: WebServerTemplate(
        cpu_count=2, memory_mb=4096, storage_gb=80, adapter_count=1, dynamic_memory=True
    ),
    WorkloadType.VDI: VDITemplate(
        cpu_count=2, memory_mb=4096, storage_gb=60, adapter_count=1, dynamic_memory=True, enhanced_session=True
    ),
    WorkloadType.CUSTOM: CustomTemplate(),
}

# Short names accepted from prompts and --set options
FIELD_ALIASES = {
    "cpu": "cpu_count",
    "cpus": "cpu_count",
    "cores": "cpu_count",
    "memory": "memory_mb",
    "ram": "memory_mb",
    "storage": "storage_gb",
    "disk": "storage_gb",
    "data_storage": "data_storage_gb",
    "log_storage": "log_storage_gb",
    "adapters": "adapter_count",
    "nics": "adapter_count",
    "gen": "generation",
}

_TRUE_WORDS = {"true", "yes", "y", "on", "1", "enabled"}
_FALSE_WORDS = {"false", "no", "n", "off", "0", "disabled"}


def get_preset(workload: "WorkloadType | str") -> TemplateSpec:
    """Return the built-in template for a workload class."""
    return PRESETS[WorkloadType.parse(workload)]


def build_custom(fields: Optional[Mapping[str, Any]] = None) -> TemplateSpec:
    """
    Build a Custom template from user-supplied values.

    Omitted fields fall back to the custom defaults (2 CPU, 4096 MB,
    80 GB, 1 adapter, dynamic memory, secure boot, generation 2).

    Raises:
        ValidationError: naming the offending field
    """
    values = _coerce_fields(CustomTemplate, fields or {})
    return CustomTemplate(**values)


def override(spec: TemplateSpec, overrides: Optional[Mapping[str, Any]]) -> TemplateSpec:
    """Apply a sparse set of field replacements and re-validate."""
    if not overrides:
        return spec
    values = _coerce_fields(type(spec), overrides)
    logger.debug(f"Overriding {spec.workload_type.value} template fields: {sorted(values)}")
    return dataclasses.replace(spec, **values)


def parse_assignments(assignments: List[str]) -> Dict[str, str]:
    """Turn ``field=value`` strings into an override mapping."""
    result: Dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(item, "expected field=value")
        result[key.strip()] = value.strip()
    return result


def _coerce_fields(cls: type, fields: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name: f for f in dataclasses.fields(cls)}
    workload = cls.workload_type
    values: Dict[str, Any] = {}
    for raw_key, raw_value in fields.items():
        key = raw_key.strip().lower().replace("-", "_")
        key = FIELD_ALIASES.get(key, key)
        if key not in known:
            raise ValidationError(raw_key, f"not a field of {workload.value} templates")
        values[key] = _coerce_value(key, known[key].type, raw_value)
    return values


def _coerce_value(field: str, field_type: Any, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if field_type is bool:
        lowered = text.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ValidationError(field, f"expected true or false, got {value!r}")
    if field_type is int:
        try:
            return int(text)
        except ValueError as e:
            raise ValidationError(field, f"expected an integer, got {value!r}") from e
    return text

"""Tests for catalog presets, custom builder and overrides."""

import itertools

import pytest

from winlab import catalog
from winlab.models import (
    ApplicationServerTemplate,
    CustomTemplate,
    DatabaseServerTemplate,
    DomainControllerTemplate,
    ValidationError,
    VDITemplate,
    WebServerTemplate,
    WorkloadType,
)


class TestPresets:
    """Test cases for built-in presets."""

    def test_application_server_preset(self):
        """Test ApplicationServer preset matches the documented defaults."""
        spec = catalog.get_preset(WorkloadType.APPLICATION_SERVER)

        assert isinstance(spec, ApplicationServerTemplate)
        assert spec.cpu_count == 4
        assert spec.memory_mb == 8192
        assert spec.storage_gb == 120
        assert spec.adapter_count == 2
        assert spec.dynamic_memory is True
        assert spec.secure_boot is True
        assert spec.generation == 2

    @pytest.mark.parametrize(
        "workload,cls",
        [
            (WorkloadType.DOMAIN_CONTROLLER, DomainControllerTemplate),
            (WorkloadType.DATABASE_SERVER, DatabaseServerTemplate),
            (WorkloadType.WEB_SERVER, WebServerTemplate),
            (WorkloadType.VDI, VDITemplate),
            (WorkloadType.CUSTOM, CustomTemplate),
        ],
    )
    def test_presets_use_workload_classes(self, workload, cls):
        """Test each preset is an instance of its workload class."""
        spec = catalog.get_preset(workload)

        assert type(spec) is cls
        assert spec.workload_type == workload

    def test_preset_lookup_by_string(self):
        """Test presets resolve from user-typed names."""
        assert catalog.get_preset("database-server") is catalog.PRESETS[WorkloadType.DATABASE_SERVER]

    def test_database_preset_has_data_and_log_disks(self):
        """Test DatabaseServer preset carries data and log storage."""
        spec = catalog.get_preset(WorkloadType.DATABASE_SERVER)

        assert spec.data_storage_gb == 500
        assert spec.log_storage_gb == 100

    def test_vdi_preset_enables_enhanced_session(self):
        """Test VDI preset requests enhanced session mode."""
        assert catalog.get_preset(WorkloadType.VDI).enhanced_session is True

    def test_domain_controller_uses_static_memory(self):
        """Test DomainController preset disables dynamic memory."""
        assert catalog.get_preset(WorkloadType.DOMAIN_CONTROLLER).dynamic_memory is False


class TestBuildCustom:
    """Test cases for the custom template builder."""

    def test_defaults(self):
        """Test omitted fields fall back to the custom defaults."""
        spec = catalog.build_custom({})

        assert spec == CustomTemplate(
            cpu_count=2,
            memory_mb=4096,
            storage_gb=80,
            adapter_count=1,
            generation=2,
            dynamic_memory=True,
            secure_boot=True,
        )

    def test_string_values_are_coerced(self):
        """Test prompt-style string input is converted."""
        spec = catalog.build_custom(
            {"cpu": "6", "memory": " 12288 ", "secure-boot": "no", "generation": "1", "adapters": "3"}
        )

        assert spec.cpu_count == 6
        assert spec.memory_mb == 12288
        assert spec.secure_boot is False
        assert spec.generation == 1
        assert spec.adapter_count == 3

    @pytest.mark.parametrize(
        "fields,field",
        [
            ({"cpu_count": 0}, "cpu_count"),
            ({"memory": "-5"}, "memory_mb"),
            ({"storage_gb": 0}, "storage_gb"),
            ({"adapters": "0"}, "adapter_count"),
            ({"memory": "lots"}, "memory_mb"),
            ({"dynamic_memory": "maybe"}, "dynamic_memory"),
            ({"generation": 1}, "secure_boot"),
            ({"gpu": 1}, "gpu"),
            ({"data_storage_gb": 100}, "data_storage_gb"),
        ],
    )
    def test_invalid_fields_are_named(self, fields, field):
        """Test validation errors name the offending field."""
        with pytest.raises(ValidationError) as exc_info:
            catalog.build_custom(fields)

        assert exc_info.value.field == field

    def test_valid_inputs_satisfy_invariants(self):
        """Test every valid combination keeps the hardware invariants."""
        for cpu, memory, storage, adapters, generation, secure_boot in itertools.product(
            [1, 2, 16], [512, 4096], [1, 80], [1, 4], [1, 2], [True, False]
        ):
            fields = {
                "cpu_count": cpu,
                "memory_mb": memory,
                "storage_gb": storage,
                "adapter_count": adapters,
                "generation": generation,
                "secure_boot": secure_boot,
            }
            if secure_boot and generation != 2:
                with pytest.raises(ValidationError):
                    catalog.build_custom(fields)
                continue

            spec = catalog.build_custom(fields)

            assert spec.cpu_count > 0
            assert spec.memory_mb > 0
            assert spec.storage_gb > 0
            assert spec.adapter_count >= 1
            assert not spec.secure_boot or spec.generation == 2


class TestOverride:
    """Test cases for field-level overrides."""

    def test_override_returns_new_spec(self):
        """Test override leaves the preset untouched."""
        preset = catalog.get_preset(WorkloadType.APPLICATION_SERVER)

        spec = catalog.override(preset, {"memory": 16384})

        assert spec.memory_mb == 16384
        assert spec.cpu_count == 4
        assert isinstance(spec, ApplicationServerTemplate)
        assert preset.memory_mb == 8192

    def test_override_empty_is_identity(self):
        """Test an empty override returns the same spec."""
        preset = catalog.get_preset(WorkloadType.WEB_SERVER)

        assert catalog.override(preset, {}) is preset
        assert catalog.override(preset, None) is preset

    def test_override_revalidates(self):
        """Test overrides are validated after they are applied."""
        preset = catalog.get_preset(WorkloadType.WEB_SERVER)

        with pytest.raises(ValidationError) as exc_info:
            catalog.override(preset, {"generation": "1"})

        assert exc_info.value.field == "secure_boot"

    def test_override_rejects_fields_of_other_workloads(self):
        """Test database-only fields cannot be set on a web server."""
        preset = catalog.get_preset(WorkloadType.WEB_SERVER)

        with pytest.raises(ValidationError) as exc_info:
            catalog.override(preset, {"log_storage": 20})

        assert exc_info.value.field == "log_storage"
        assert "WebServer" in exc_info.value.message

    def test_override_database_disks(self):
        """Test database disks can be resized through overrides."""
        spec = catalog.override(catalog.get_preset(WorkloadType.DATABASE_SERVER), {"data_storage": "2000"})

        assert spec.data_storage_gb == 2000


class TestParseAssignments:
    """Test cases for field=value parsing."""

    def test_parses_pairs(self):
        """Test assignments become a mapping with trimmed parts."""
        assert catalog.parse_assignments(["memory=16384", " secure-boot = off"]) == {
            "memory": "16384",
            "secure-boot": "off",
        }

    def test_missing_equals_is_rejected(self):
        """Test an assignment without '=' is rejected."""
        with pytest.raises(ValidationError):
            catalog.parse_assignments(["memory"])

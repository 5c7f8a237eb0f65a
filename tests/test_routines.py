"""Tests for the parse routine registry."""

import pytest

from financial_parser.exceptions import ParserError, RoutineError
from financial_parser.routines import (
    RoutineRegistry,
    default_registry,
    import_path,
    register_routine,
    resolve_import_path,
)


def upper_routine(text, config):
    return {"records": [], "headers": [], "metadata": {}}


def test_register_and_get(routine_registry):
    routine_registry.register("upper", upper_routine)

    assert "upper" in routine_registry
    assert routine_registry.get("upper") is upper_routine
    assert routine_registry.names() == ["upper"]
    assert routine_registry.is_exportable("upper")


def test_register_as_decorator(routine_registry):
    @routine_registry.register("local", offload=False)
    def local(text, config):
        return {}

    assert routine_registry.get("local") is local
    assert not routine_registry.is_exportable("local")


def test_offload_requires_importable_function(routine_registry):
    with pytest.raises(RoutineError) as exc_info:
        routine_registry.register("inline", lambda text, config: {})
    assert "cannot be offloaded" in str(exc_info.value)
    assert "inline" not in routine_registry


def test_non_callable_rejected(routine_registry):
    with pytest.raises(RoutineError):
        routine_registry.register("number", 42, offload=False)


def test_unknown_routine(routine_registry):
    with pytest.raises(RoutineError) as exc_info:
        routine_registry.get("missing")
    assert "Unknown parse routine 'missing'" in str(exc_info.value)
    assert isinstance(exc_info.value, ParserError)


def test_unregister(routine_registry):
    routine_registry.register("upper", upper_routine)
    routine_registry.unregister("upper")
    routine_registry.unregister("never-registered")
    assert "upper" not in routine_registry
    assert routine_registry.export() == {}


def test_reregister_without_offload_drops_export(routine_registry):
    routine_registry.register("upper", upper_routine)
    routine_registry.register("upper", upper_routine, offload=False)
    assert "upper" in routine_registry
    assert not routine_registry.is_exportable("upper")


def test_export_round_trip(routine_registry):
    routine_registry.register("upper", upper_routine)
    routine_registry.register("local", lambda text, config: {}, offload=False)

    exported = routine_registry.export()
    assert exported == {"upper": f"{__name__}:upper_routine"}

    restored = RoutineRegistry.from_export(exported)
    assert restored.names() == ["upper"]
    assert restored.get("upper") is upper_routine


def test_from_export_skips_unresolvable():
    restored = RoutineRegistry.from_export({
        "gone": "no_such_module_anywhere:func",
        "attr": f"{__name__}:not_defined_here",
        "upper": f"{__name__}:upper_routine",
    })
    assert restored.names() == ["upper"]


def test_import_path():
    assert import_path(upper_routine) == f"{__name__}:upper_routine"
    assert import_path(lambda: None) is None
    assert resolve_import_path("json:dumps")({"a": 1}) == '{"a": 1}'


def test_resolve_non_callable():
    with pytest.raises(RoutineError):
        resolve_import_path("json:__name__")


def test_register_routine_uses_default_registry():
    try:
        register_routine("upper-default", upper_routine)
        assert default_registry.get("upper-default") is upper_routine
    finally:
        default_registry.unregister("upper-default")

"""Tests for dependency ordering."""

import pytest

from deployctl.errors import CircularDependencyError, ConfigurationError
from deployctl.services.resolver import resolve_order
from tests.helpers.fakes import make_services


class TestResolveOrder:
    def test_dependencies_precede_dependents(self, stack_services):
        order = resolve_order(stack_services)

        assert order == ["db", "cache", "api"]

    def test_every_service_appears_once(self):
        services = make_services(
            {
                "web": ["api", "cdn"],
                "api": ["db", "queue"],
                "worker": ["queue", "db"],
                "queue": [],
                "db": [],
                "cdn": [],
            }
        )

        order = resolve_order(services)

        assert sorted(order) == sorted(services)
        for name, service in services.items():
            for dependency in service.dependencies:
                assert order.index(dependency) < order.index(name)

    def test_independent_services_keep_declaration_order(self):
        services = make_services({"c": [], "a": [], "b": []})

        assert resolve_order(services) == ["c", "a", "b"]

    def test_result_is_reproducible(self, stack_services):
        assert resolve_order(stack_services) == resolve_order(stack_services)

    def test_empty_configuration(self):
        assert resolve_order({}) == []

    def test_cycle_raises_with_path(self):
        services = make_services({"a": ["b"], "b": ["c"], "c": ["a"]})

        with pytest.raises(CircularDependencyError) as excinfo:
            resolve_order(services)

        assert excinfo.value.service == "a"
        assert excinfo.value.cycle == ["a", "b", "c", "a"]
        assert "circular dependency" in str(excinfo.value)

    def test_self_dependency_is_a_cycle(self):
        services = make_services({"solo": ["solo"]})

        with pytest.raises(CircularDependencyError) as excinfo:
            resolve_order(services)

        assert excinfo.value.cycle == ["solo", "solo"]

    def test_undeclared_dependency_is_rejected(self):
        services = make_services({"api": ["ghost"]})

        with pytest.raises(ConfigurationError, match="undeclared service ghost"):
            resolve_order(services)

"""Test data factories for the marketplace."""

from tests.factories.instance_factory import InstanceFactory

__all__ = ["InstanceFactory"]

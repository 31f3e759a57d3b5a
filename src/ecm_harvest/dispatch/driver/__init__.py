"""Context driver implementations."""

from ecm_harvest.dispatch.driver.base import ContextDriver
from ecm_harvest.dispatch.driver.subprocess_driver import SubprocessContextDriver

__all__ = [
    "ContextDriver",
    "SubprocessContextDriver",
]

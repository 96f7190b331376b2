"""Service registry — descriptors, probe specs and the YAML loader."""

from .models import ProbeKind, ProbeSpec, ServiceDescriptor
from .registry import ServiceRegistry

"""Health subsystem — probe executor, per-service state machine, monitor."""

from .fsm import HealthStateMachine, ServiceSnapshot, ServiceState, ServiceStatus, Transition
from .monitor import HealthMonitor
from .probes import Outcome, ProbeResult, build_probe, execute_probe

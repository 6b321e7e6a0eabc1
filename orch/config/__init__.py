"""
orch.config - Scenario and run configuration

Provides JSON/YAML scenario parsing and harness run settings.
"""

from .scenario import Scenario, load_scenario, parse_scenario, validate_scenario
from .settings import RunConfig

__all__ = ['Scenario', 'load_scenario', 'parse_scenario', 'validate_scenario', 'RunConfig']

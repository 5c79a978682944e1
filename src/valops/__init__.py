"""
valops - Idempotent operation of blockchain node fleets on a single host.

Packages:
- valops.core: errors, logging, settings
- valops.deploy: service specs, config rendering, credential vault,
  supervisor adapter, health probes, locks, backup guard and the reconciler
- valops.cli: typer command line surface
"""

__version__ = "0.3.0"

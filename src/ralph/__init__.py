"""
Ralph - run decomposed specs through containerized coding agents.

The package is organised leaf-first:

- ralph.core: errors, logging, settings, filesystem layout, run lock
- ralph.tools: git CLI wrapper
- ralph.deploy: docker CLI container manager
- ralph.parallel: the parallel sub-spec scheduler (``ralph parallel-full``)
- ralph.cli: Typer command-line interface
"""

__version__ = "0.3.0"

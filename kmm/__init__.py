"""
KMM Operator - Kernel Module Management controller

Schedules kernel Modules onto the cluster Nodes they select by writing
per-node desired state (NodeModulesConfig) for the node agent to act on.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- Data flows downward: reconciler -> resolver -> convergence helper -> store

Modules:
- api: Resource models and the scheme registry
- client: Cluster object store access
- nmc: NodeModulesConfig labels and entry mutation
- kernel: Kernel version to build configuration mapping
- registry: Image existence checks and pull credentials
- reconciler: Module to NodeModulesConfig reconciliation
- manager: Work queue, watches and reconcile workers
"""

__version__ = "1.0.0"

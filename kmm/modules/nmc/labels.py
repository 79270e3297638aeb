"""
NodeModulesConfig label naming.

Each NMC carries two labels per module as a queryable index: "configured"
mirrors the presence of the module's entry in the NMC spec and is owned by
the controller; "in-use" is set by the controller on enable and cleared
only by the node agent once the module is unloaded.
"""

from typing import Optional

from ..api.models import NamespacedName

LABEL_PREFIX = "beta.kmm.node.kubernetes.io/"
CONFIGURED_SUFFIX = ".module-configured"
IN_USE_SUFFIX = ".module-in-use"


def module_configured_label(namespace: str, name: str) -> str:
    return f"{LABEL_PREFIX}{namespace}.{name}{CONFIGURED_SUFFIX}"


def module_in_use_label(namespace: str, name: str) -> str:
    return f"{LABEL_PREFIX}{namespace}.{name}{IN_USE_SUFFIX}"


def module_from_label(label: str) -> Optional[NamespacedName]:
    """
    Recover the module identity from a configured or in-use label.

    Namespaces cannot contain dots, so the first dot separates the
    namespace from the module name.

    Returns:
        The module identity, or None for unrelated labels
    """
    if not label.startswith(LABEL_PREFIX):
        return None

    body = label[len(LABEL_PREFIX):]
    for suffix in (CONFIGURED_SUFFIX, IN_USE_SUFFIX):
        if body.endswith(suffix):
            body = body[: -len(suffix)]
            break
    else:
        return None

    namespace, sep, name = body.partition(".")
    if not sep or not namespace or not name:
        return None
    return NamespacedName(name=name, namespace=namespace)

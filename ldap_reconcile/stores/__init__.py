"""
Local store backends.

Backends are modules in this package containing a LocalStore subclass and
are selected by the ``store.module`` configuration value.
"""

import importlib
import logging
from typing import Any, Dict

from ldap_reconcile.exceptions import ConfigurationError
from .base import LocalStore

logger = logging.getLogger(__name__)


def load_store(store_config: Dict[str, Any]) -> LocalStore:
    """
    Dynamically load a store module and create the store instance.

    Args:
        store_config: The ``store`` configuration section

    Returns:
        Initialized LocalStore

    Raises:
        ConfigurationError: If the module cannot be imported or has no LocalStore subclass
    """
    module_name = store_config.get('module', 'memory')

    try:
        store_module = importlib.import_module(f"ldap_reconcile.stores.{module_name}")
    except ImportError as e:
        raise ConfigurationError(f"Failed to import store module {module_name}: {e}")

    store_class = None
    for attr_name in dir(store_module):
        attr = getattr(store_module, attr_name)
        if (isinstance(attr, type) and
                issubclass(attr, LocalStore) and
                attr is not LocalStore and
                attr.__module__ == store_module.__name__):
            store_class = attr
            break

    if not store_class:
        raise ConfigurationError(f"No LocalStore subclass found in store module {module_name}")

    logger.debug(f"Using store class {store_class.__name__} from {module_name}")
    return store_class(store_config)


__all__ = ['LocalStore', 'load_store']

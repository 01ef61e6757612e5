"""
Post-import processors.

A post-processor receives every record the reconciler has persisted, with
its auxiliary ``extra_data`` restored, and may perform its own follow-up
work. Processors are named in configuration as ``package.module:ClassName``
and are imported, instantiated and type-checked when configuration is
loaded, so a typo fails at startup instead of halfway through a run.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from ldap_reconcile.exceptions import ConfigurationError
from ldap_reconcile.models import LocalRecord

logger = logging.getLogger(__name__)


class PostProcessor(ABC):
    """Interface for post-import processing of persisted records."""

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options = options or {}

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def process_imported_record(self, table: str, record: LocalRecord) -> None:
        """
        Handle a record after it was persisted.

        Args:
            table: Table the record was written to, e.g. ``be_users``
            record: Final record including its uid and ``extra_data``

        Raises:
            ConfigurationError: If the processor cannot work with the current setup
        """
        pass


def load_post_processor(spec: Any) -> PostProcessor:
    """
    Resolve a single post-processor specification.

    Args:
        spec: ``"package.module:ClassName"`` or a dict with ``class`` and ``options``

    Raises:
        ConfigurationError: If the class cannot be imported or is not a PostProcessor
    """
    options = {}
    if isinstance(spec, dict):
        options = spec.get('options') or {}
        spec = spec.get('class')

    if not isinstance(spec, str) or ':' not in spec:
        raise ConfigurationError(f"Post-processor must be given as 'package.module:ClassName', got {spec!r}")

    module_name, class_name = spec.split(':', 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Failed to import post-processor module {module_name}: {e}")

    processor_class = getattr(module, class_name, None)
    if processor_class is None:
        raise ConfigurationError(f"Post-processor class {class_name} not found in {module_name}")
    if not (isinstance(processor_class, type) and issubclass(processor_class, PostProcessor)):
        raise ConfigurationError(f"{spec} does not implement PostProcessor")

    try:
        return processor_class(options)
    except TypeError as e:
        raise ConfigurationError(f"Failed to initialize post-processor {spec}: {e}")


def load_post_processors(specs: Optional[Iterable[Any]]) -> List[PostProcessor]:
    """Resolve all configured post-processors, in configuration order."""
    processors = [load_post_processor(spec) for spec in specs or []]
    if processors:
        logger.info(f"Loaded post-processors: {', '.join(p.name for p in processors)}")
    return processors

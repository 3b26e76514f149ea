import importlib
from typing import Any, Dict, List, Optional, Type

from spice.config.settings import ConfigLoader
from spice.logger import get_logger
from spice.parsers.base import StatementParser

logger = get_logger(__name__)


class ParserFactory:
    """
    Factory for creating statement parsers.

    Uses a registry to map statement format identifiers to parser classes.
    The registry is filled from `parsers.json` at startup and then locked.
    """

    _locked = False
    _registry: Dict[str, Type[StatementParser]] = {}

    @classmethod
    def register(cls, fi_name: str, parser_class: Type[StatementParser]) -> None:
        """
        Register a parser for a statement format.

        Args:
            fi_name: Unique identifier for the format (e.g. 'csv')
            parser_class: The parser class

        Raises:
            ValueError: If the identifier is already registered
            TypeError: If parser_class doesn't inherit from StatementParser
            RuntimeError: If the parser registry is locked

        Example:
            ParserFactory.register('csv', CSVStatementParser)
        """
        if cls._locked:
            raise RuntimeError("Registry is locked, cannot add more parsers")

        if fi_name in cls._registry:
            raise ValueError(f"Parser for '{fi_name}' is already registered")

        if not isinstance(parser_class, type) or not issubclass(parser_class, StatementParser):
            raise TypeError(f"{parser_class} must inherit from StatementParser")

        cls._registry[fi_name] = parser_class
        logger.debug("Registered parser %s for '%s'", parser_class.__name__, fi_name)

    @classmethod
    def lock_registry(cls) -> None:
        """Prevent further registration (call after app initialization)"""
        cls._locked = True

    @classmethod
    def is_locked(cls) -> bool:
        return cls._locked

    @classmethod
    def reset(cls) -> None:
        """Empty and unlock the registry. Used by tests."""
        cls._registry = {}
        cls._locked = False

    @classmethod
    def create_parser(cls, fi: str) -> StatementParser:
        """
        Create a parser instance for the given format.

        Raises:
            ValueError: If no parser is registered for this identifier

        Example:
            parser = ParserFactory.create_parser('csv')
            transactions = parser.parse('statement.csv')
        """
        if fi not in cls._registry:
            available = ", ".join(cls._registry.keys())
            raise ValueError(
                f"No parser registered for '{fi}'. "
                f"Available parsers: {available}"
            )

        return cls._registry[fi]()

    @classmethod
    def get_available_parsers(cls) -> List[str]:
        """Return all registered format identifiers"""
        return list(cls._registry.keys())

    @classmethod
    def load_parsers_from_config(cls, config: Optional[Dict[str, Any]] = None) -> None:
        """
        Load and register parsers from configuration, then lock the registry.

        Args:
            config: Optional config dict. If None, loads from ConfigLoader.

        Example (testing):
            ParserFactory.load_parsers_from_config(config={"parsers": [...]})
        """
        if cls._locked:
            return

        if config is None:
            config = ConfigLoader.load_parsers_config()

        for parser_config in config["parsers"]:
            module_path, class_name = str(parser_config["class"]).rsplit(".", 1)
            module = importlib.import_module(module_path)
            parser_class = getattr(module, class_name)

            cls.register(parser_config["financial_institution"], parser_class)

        cls.lock_registry()

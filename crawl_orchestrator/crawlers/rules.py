"""
Rule providers.

Rules are plain ``RuleDescriptor`` values grouped in an immutable provider.
A provider can also be built from a rule module: a module exposing either a
``RULES`` iterable of descriptors or a ``build_rule_provider()`` factory.
"""

import importlib
import sys
from typing import Iterable, List, Optional, Tuple

from crawl_orchestrator.concurrent.models import RuleDescriptor, Task
from crawl_orchestrator.utils.errors import ConfigurationError
from crawl_orchestrator.utils.logging import get_logger
from .base import RuleProvider


logger = get_logger(__name__)


class RegexRuleProvider(RuleProvider):
    """Resolves the first rule whose url pattern matches the task url."""

    def __init__(self, rules: Iterable[RuleDescriptor] = ()):
        self._rules: Tuple[RuleDescriptor, ...] = tuple(rules)
        names = [rule.name for rule in self._rules]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError("Duplicate rule names", {"names": duplicates})

    @property
    def rules(self) -> Tuple[RuleDescriptor, ...]:
        return self._rules

    def rule_names(self) -> List[str]:
        return [rule.name for rule in self._rules]

    def resolve_rule(self, task: Task) -> Optional[RuleDescriptor]:
        for rule in self._rules:
            if rule.matches(task.url):
                return rule
        return None

    def with_rule(self, rule: RuleDescriptor) -> "RegexRuleProvider":
        """New provider with ``rule`` added, replacing any rule of the same name."""
        kept = [existing for existing in self._rules if existing.name != rule.name]
        return RegexRuleProvider(kept + [rule])

    def without_rule(self, name: str) -> "RegexRuleProvider":
        """New provider without the rule called ``name``."""
        if name not in self.rule_names():
            raise KeyError(f"Rule '{name}' is not registered")
        return RegexRuleProvider(rule for rule in self._rules if rule.name != name)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"RegexRuleProvider(rules={self.rule_names()})"


def load_rule_provider(module_name: Optional[str], reload: bool = False) -> RuleProvider:
    """
    Build a rule provider from a rule module.

    Args:
        module_name: Dotted module path
        reload: Re-execute the module source instead of reusing the cached module

    Returns:
        Freshly built provider

    Raises:
        ConfigurationError: If the module name is empty, the module cannot be
            imported, or it exposes no rules
    """
    if not module_name or not module_name.strip():
        raise ConfigurationError("Rule module cannot be empty")

    try:
        if reload and module_name in sys.modules:
            module = importlib.reload(sys.modules[module_name])
        else:
            module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(
            f"Cannot import rule module '{module_name}'",
            {"error": str(e)}
        ) from e

    factory = getattr(module, "build_rule_provider", None)
    if callable(factory):
        provider = factory()
        if not isinstance(provider, RuleProvider):
            raise ConfigurationError(
                f"build_rule_provider() in '{module_name}' must return a RuleProvider",
                {"returned": type(provider).__name__}
            )
    elif hasattr(module, "RULES"):
        provider = RegexRuleProvider(module.RULES)
    else:
        raise ConfigurationError(
            f"Rule module '{module_name}' defines neither RULES nor build_rule_provider()"
        )

    logger.info(f"Loaded rule provider from {module_name}: {provider.rule_names()}")
    return provider

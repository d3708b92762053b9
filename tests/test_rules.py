"""
Tests for regex rule providers and rule module loading.
"""

import sys
import textwrap
import uuid

import pytest

from crawl_orchestrator.concurrent.models import RuleDescriptor, Task
from crawl_orchestrator.crawlers.base import RuleProvider
from crawl_orchestrator.crawlers.rules import RegexRuleProvider, load_rule_provider
from crawl_orchestrator.utils.errors import ConfigurationError


def rule(name, pattern=".*"):
    return RuleDescriptor(name, pattern, lambda response, task: None)


class TestRegexRuleProvider:
    """First matching rule wins."""

    def test_resolves_first_match(self):
        provider = RegexRuleProvider([
            rule("item", r"https?://shop\.example\.com/item/\d+"),
            rule("shop", r"https?://shop\.example\.com/"),
            rule("fallback"),
        ])

        assert provider.resolve_rule(Task(url="http://shop.example.com/item/7")).name == "item"
        assert provider.resolve_rule(Task(url="http://shop.example.com/cart")).name == "shop"
        assert provider.resolve_rule(Task(url="http://other.example.com/")).name == "fallback"

    def test_no_match(self):
        provider = RegexRuleProvider([rule("item", r"http://shop\.example\.com/item/")])
        assert provider.resolve_rule(Task(url="http://elsewhere.org/")) is None

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            RegexRuleProvider([rule("a"), rule("b"), rule("a")])
        assert exc_info.value.details["names"] == ["a"]

    def test_with_rule_returns_new_provider(self):
        original = RegexRuleProvider([rule("a"), rule("b")])
        replacement = rule("a", r"http://new\.")

        updated = original.with_rule(replacement)

        assert original.rule_names() == ["a", "b"]
        assert updated.rule_names() == ["b", "a"]
        assert updated.rules[-1] is replacement

    def test_without_rule(self):
        provider = RegexRuleProvider([rule("a"), rule("b")])
        assert provider.without_rule("a").rule_names() == ["b"]
        assert len(provider) == 2
        with pytest.raises(KeyError):
            provider.without_rule("missing")


class TestLoadRuleProvider:
    """Building providers from rule modules."""

    @pytest.fixture
    def rule_module(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "dont_write_bytecode", True)
        monkeypatch.syspath_prepend(str(tmp_path))
        created = []

        def write(source):
            name = f"crawl_rules_{uuid.uuid4().hex}"
            (tmp_path / f"{name}.py").write_text(textwrap.dedent(source), encoding="utf-8")
            created.append(name)
            return name

        yield write
        for name in created:
            sys.modules.pop(name, None)

    def test_rules_list(self, rule_module):
        name = rule_module('''
            from crawl_orchestrator.concurrent.models import RuleDescriptor

            RULES = [
                RuleDescriptor("list", r"http://example\\.com/list", lambda response, task: None),
                RuleDescriptor("item", r"http://example\\.com/item", lambda response, task: None),
            ]
        ''')

        provider = load_rule_provider(name)

        assert isinstance(provider, RegexRuleProvider)
        assert provider.rule_names() == ["list", "item"]

    def test_factory_preferred(self, rule_module):
        name = rule_module('''
            from crawl_orchestrator.concurrent.models import RuleDescriptor
            from crawl_orchestrator.crawlers.rules import RegexRuleProvider

            RULES = []

            def build_rule_provider():
                return RegexRuleProvider([RuleDescriptor("built", ".*", lambda response, task: None)])
        ''')

        assert load_rule_provider(name).rule_names() == ["built"]

    def test_factory_must_return_provider(self, rule_module):
        name = rule_module('''
            def build_rule_provider():
                return []
        ''')

        with pytest.raises(ConfigurationError):
            load_rule_provider(name)

    def test_module_without_rules(self, rule_module):
        name = rule_module('''
            VERSION = 1
        ''')

        with pytest.raises(ConfigurationError):
            load_rule_provider(name)

    def test_unimportable_module(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_rule_provider(f"missing_rules_{uuid.uuid4().hex}")
        assert "Cannot import" in str(exc_info.value)

    @pytest.mark.parametrize("name", [None, "", "   "])
    def test_empty_module_name(self, name):
        with pytest.raises(ConfigurationError):
            load_rule_provider(name)

    def test_custom_provider_interface(self):
        class StaticProvider(RuleProvider):
            def resolve_rule(self, task):
                return None

        assert StaticProvider().rule_names() == []

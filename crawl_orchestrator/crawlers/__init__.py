"""
Collaborators driven by the engine's workers: fetchers, rule providers,
pipelines and the start-task loader.
"""

from .base import BaseFetcher, RuleProvider, BasePipeline
from .http_client import HttpFetcher, UserAgentRotator
from .rules import RegexRuleProvider, load_rule_provider
from .pipelines import LoggingPipeline, CollectingPipeline
from .start_requests import load_start_tasks, START_REQUESTS_SCHEMA

__all__ = [
    'BaseFetcher',
    'RuleProvider',
    'BasePipeline',
    'HttpFetcher',
    'UserAgentRotator',
    'RegexRuleProvider',
    'load_rule_provider',
    'LoggingPipeline',
    'CollectingPipeline',
    'load_start_tasks',
    'START_REQUESTS_SCHEMA'
]

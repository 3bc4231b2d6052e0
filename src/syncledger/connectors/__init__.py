"""Storage and collaborator connectors for SyncLedger."""

from syncledger.connectors.sqlite import Database
from syncledger.connectors.http import HttpOrigin, HttpPushTransport, HttpTarget
from syncledger.connectors.local import ConditionEvaluator, DirectoryTarget, JsonLinesOrigin, KeyPathMapper
from syncledger.connectors.registry import CollaboratorRegistry

__all__ = [
    "Database",
    "HttpOrigin",
    "HttpPushTransport",
    "HttpTarget",
    "ConditionEvaluator",
    "DirectoryTarget",
    "JsonLinesOrigin",
    "KeyPathMapper",
    "CollaboratorRegistry",
]

from ori.capabilities.base import (
    FileMutationCapability,
    FileOperation,
    ModelExecutionCapability,
    PersistenceCapability,
)
from ori.capabilities.files import LocalFileMutation
from ori.capabilities.persistence import InMemoryLogStore, JsonlLogStore
from ori.capabilities.resilient import ResilientCapability, RetryPolicy
from ori.capabilities.template import TemplateModelCapability

__all__ = [
    "FileMutationCapability",
    "FileOperation",
    "InMemoryLogStore",
    "JsonlLogStore",
    "LocalFileMutation",
    "ModelExecutionCapability",
    "PersistenceCapability",
    "ResilientCapability",
    "RetryPolicy",
    "TemplateModelCapability",
]

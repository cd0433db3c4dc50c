"""Sync module for publishing captures to the remote content store."""

from streetsurvey.sync.coverage import CoverageIndexMerger
from streetsurvey.sync.github import (
    GitHubContentsClient,
    PublishCredentials,
    RateLimitStatus,
    RemoteFile,
)
from streetsurvey.sync.network import ConnectivityMonitor
from streetsurvey.sync.uploader import UploadResult, UploadWorker
from streetsurvey.sync.validation import AccessReport, validate_access

__all__ = [
    "AccessReport",
    "ConnectivityMonitor",
    "CoverageIndexMerger",
    "GitHubContentsClient",
    "PublishCredentials",
    "RateLimitStatus",
    "RemoteFile",
    "UploadResult",
    "UploadWorker",
    "validate_access",
]

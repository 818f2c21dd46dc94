from __future__ import annotations

from prometheus_client import Counter, Histogram


DOCUMENTS_CREATED_COUNTER = Counter(
    "mdp_documents_created_total",
    "Documents and folders created",
    ["kind"],
)

DOCUMENTS_DELETED_COUNTER = Counter(
    "mdp_documents_deleted_total",
    "Documents removed, including cascaded descendants",
)

VERSIONS_APPENDED_COUNTER = Counter(
    "mdp_document_versions_appended_total",
    "Document versions appended to the version log",
)

PUBLISHES_SUCCEEDED_COUNTER = Counter(
    "mdp_publishes_succeeded_total",
    "Publish runs that produced a bundle and a publish record",
)

PUBLISHES_FAILED_COUNTER = Counter(
    "mdp_publishes_failed_total",
    "Publish runs that were rejected or aborted",
    ["reason"],
)

BUNDLE_SIZE_HISTOGRAM = Histogram(
    "mdp_publish_bundle_bytes",
    "Size of published site bundles",
    buckets=(1_024, 8_192, 65_536, 262_144, 1_048_576, 4_194_304, 16_777_216),
)


def record_document_created(is_folder: bool) -> None:
    DOCUMENTS_CREATED_COUNTER.labels(kind="folder" if is_folder else "document").inc()


def record_documents_deleted(count: int) -> None:
    if count:
        DOCUMENTS_DELETED_COUNTER.inc(count)


def record_version_appended() -> None:
    VERSIONS_APPENDED_COUNTER.inc()


def record_publish_succeeded(bundle_size: int) -> None:
    PUBLISHES_SUCCEEDED_COUNTER.inc()
    BUNDLE_SIZE_HISTOGRAM.observe(bundle_size)


def record_publish_failed(reason: str) -> None:
    PUBLISHES_FAILED_COUNTER.labels(reason=reason).inc()

from timeline_ingest.services.connectors.api_connector import PaginatedApiConnector
from timeline_ingest.services.connectors.base import ConnectorRuntime, SourceConnector
from timeline_ingest.services.connectors.factory import (
    build_connectors,
    compute_ingestion_window,
    create_connector,
)
from timeline_ingest.services.connectors.html_connector import StructuredHtmlConnector
from timeline_ingest.services.connectors.rss_connector import RssConnector

__all__ = [
    "ConnectorRuntime",
    "PaginatedApiConnector",
    "RssConnector",
    "SourceConnector",
    "StructuredHtmlConnector",
    "build_connectors",
    "compute_ingestion_window",
    "create_connector",
]

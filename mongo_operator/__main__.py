"""Main entry point for the MongoDB operator."""

import logging
import sys

import kopf
from prometheus_client import start_http_server

from mongo_operator.config import get_settings
from mongo_operator.handlers import cluster_handler  # noqa: F401
from mongo_operator.utils.metrics import get_metrics

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the MongoDB operator."""
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format=settings.log_format, stream=sys.stdout)

    logger.info("Starting MongoDB Operator")
    if settings.metrics_port:
        start_http_server(settings.metrics_port, registry=get_metrics().registry)
        logger.info(f"Serving metrics on port {settings.metrics_port}")

    if settings.clusterwide:
        logger.info("Watching for MongoCluster resources in all namespaces")
        kopf.run(clusterwide=True, liveness_endpoint=settings.liveness_endpoint)
    else:
        logger.info(f"Watching for MongoCluster resources in namespace {settings.namespace}")
        kopf.run(
            namespaces=[settings.namespace or "default"],
            liveness_endpoint=settings.liveness_endpoint,
        )


if __name__ == "__main__":
    main()

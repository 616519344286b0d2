"""
Lazy-init shared dependencies.
"""

import logging

from medexchange import settings

logger = logging.getLogger("medexchange-server")

# Global singletons - initialized lazily
gcs = None


def get_gcs():
    """Lazy initialization of GCS Bucket Manager"""
    global gcs
    if gcs is None:
        try:
            from medexchange.infrastructure.gcs import GCSBucketManager
            logger.info("Initializing GCS Bucket Manager (lazy)...")
            gcs = GCSBucketManager(bucket_name=settings.GCS_BUCKET_NAME)
            logger.info("GCS Bucket Manager initialized successfully")
        except Exception as e:
            logger.error("GCS Bucket Manager initialization failed: %s", e)
    return gcs

"""
GCS access for ledger persistence.

Only what GCSKeyValueStore needs: a lazily created client and bucket, and
blob deletion.  Reads and writes go through ``bucket.blob(...)`` directly.
"""

import os
import logging
from google.cloud import storage
from google.cloud.exceptions import NotFound

logger = logging.getLogger("gcs-manager")


class GCSBucketManager:
    def __init__(self, bucket_name, service_account_json_path=None):
        """
        Initializes the GCS Client (lazy - only on first use).

        :param bucket_name: The name of the GCS bucket.
        :param service_account_json_path: Path to service account JSON key.
                                          If None, uses GOOGLE_APPLICATION_CREDENTIALS
                                          or default environment auth.
        """
        self.bucket_name = bucket_name
        self.service_account_json_path = service_account_json_path
        self._client = None
        self._bucket = None

    def _ensure_initialized(self):
        """Lazy initialization of GCS client and bucket"""
        if self._client is not None:
            return
        project_id = os.getenv("PROJECT_ID")
        try:
            if self.service_account_json_path:
                self._client = storage.Client.from_service_account_json(
                    self.service_account_json_path,
                    project=project_id,
                )
            else:
                self._client = storage.Client(project=project_id)
            self._bucket = self._client.bucket(self.bucket_name)
            if not self._bucket.exists():
                logger.warning("Bucket '%s' does not exist or access is denied", self.bucket_name)
        except Exception as e:
            logger.error("Error initializing GCS client: %s", e)
            self._client = None
            raise

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    def delete_file(self, blob_name):
        """Delete one blob.  A missing blob is not an error."""
        try:
            self.bucket.blob(blob_name).delete()
            logger.debug("Blob %s deleted", blob_name)
            return True
        except NotFound:
            return False

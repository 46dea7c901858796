"""
Bronze Layer Module

Archives verified GitHub webhook deliveries as raw JSON files so they can be
audited and replayed (for example after the failure rule table changes).
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from build_failure_monitor import config

logger = logging.getLogger(__name__)


class BronzeArchive:
    """
    Stores raw webhook deliveries in the bronze layer as JSON files.
    """

    def __init__(self, directory: Optional[Path] = None, enabled: bool = True):
        self.directory = Path(directory or config.BRONZE_DIR)
        self.enabled = enabled
        if self.enabled:
            self.directory.mkdir(exist_ok=True, parents=True)

    def store_delivery(
        self, event_type: str, delivery_id: Optional[str], payload: Dict[str, Any]
    ) -> Optional[Path]:
        """
        Write one delivery to disk.

        Returns: the file path, or None when archiving is disabled or fails
        """
        if not self.enabled:
            return None
        record = {
            "event_type": event_type,
            "delivery_id": delivery_id,
            "received_at": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        file_path = self.directory / config.get_bronze_file_path(event_type, delivery_id).name
        try:
            with open(file_path, "w") as f:
                json.dump(record, f)
        except OSError as e:
            # The archive is an audit trail; losing one file must not fail the delivery
            logger.error(f"Error archiving delivery {delivery_id} to {file_path}: {str(e)}")
            return None
        logger.debug(f"Archived {event_type} delivery {delivery_id} in {file_path}")
        return file_path

    def list_files(self) -> List[Path]:
        if not self.directory.exists():
            return []
        return sorted(self.directory.glob("*.json"))

    def iter_deliveries(self, file_paths: Optional[List[Path]] = None) -> Iterator[Dict[str, Any]]:
        """Yield archived delivery records in arrival (file name) order."""
        for file_path in file_paths or self.list_files():
            try:
                with open(file_path, "r") as f:
                    record = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Error reading bronze file {file_path}: {str(e)}")
                continue
            if not isinstance(record, dict) or "payload" not in record:
                logger.warning(f"Skipping unrecognized bronze file {file_path}")
                continue
            yield record

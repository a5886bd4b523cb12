import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)


class OrderAuditor:
    """Append-only JSONL trail of order attempts, blocks, successes and errors."""

    def __init__(self, log_path: Optional[str] = None, environment: str = '', keep_last: int = 500):
        self.log_path = Path(log_path or 'logs/order_audit.jsonl')
        self.environment = environment
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=keep_last)

    def record(self, event_type: str, details: Dict[str, Any]) -> Dict[str, Any]:
        entry = {
            'timestamp': time.time(),
            'environment': self.environment,
            'event': event_type,
            'details': details,
        }
        self.recent.append(entry)
        self._write_entry(entry)
        return entry

    def entries(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if event_type is None:
            return list(self.recent)
        return [e for e in self.recent if e['event'] == event_type]

    def _write_entry(self, payload: Dict[str, Any]):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except Exception as exc:
            logger.error("Failed to persist audit log: %s", exc)

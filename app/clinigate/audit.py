"""Audit trail for AI requests.

Every completed or failed request leaves one record. Records are appended to
a local JSON-lines file and, when a bucket is configured, written to S3 as
one object per request.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from clinigate.config import Settings
from clinigate.schemas import AuditRecord

logger = logging.getLogger(__name__)


class AuditStore:
    def __init__(self, settings: Settings):
        self._settings = settings
        self._root = Path(settings.local_storage_dir)
        (self._root / "audit").mkdir(parents=True, exist_ok=True)
        self._audit_file = self._root / "audit" / "ai_requests.jsonl"

        self._s3 = None
        if settings.s3_bucket:
            import boto3

            self._s3 = boto3.client("s3", region_name=settings.s3_region)

    def _s3_key(self, record: AuditRecord) -> str:
        day = record.timestamp.strftime("%Y/%m/%d")
        prefix = self._settings.s3_prefix.strip("/")
        name = f"{day}/{record.request_id}.json"
        return f"{prefix}/{name}" if prefix else name

    async def append(self, record: AuditRecord) -> str:
        payload = record.model_dump(mode="json")
        line = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)
        with self._audit_file.open("a", encoding="utf-8") as fp:
            fp.write(line + "\n")

        if self._s3 is not None and self._settings.s3_bucket:
            key = self._s3_key(record)
            self._s3.put_object(
                Bucket=self._settings.s3_bucket,
                Key=key,
                Body=line.encode("utf-8"),
                ContentType="application/json",
            )
            return f"s3://{self._settings.s3_bucket}/{key}"
        return str(self._audit_file)

    def read_records(self, *, request_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        if not self._audit_file.exists():
            return []
        out: list[dict[str, Any]] = []
        with self._audit_file.open("r", encoding="utf-8") as fp:
            for line in fp:
                if not line.strip():
                    continue
                record = json.loads(line)
                if request_id and record.get("request_id") != request_id:
                    continue
                out.append(record)
        return out[-limit:]

"""配对码存储（JSON 文件）。

每个渠道两个文件，位于 ``~/.chatgate/credentials``：

- ``<provider>-pairing.json``：待批准请求 ``{"version": 1, "requests": [...]}``
- ``<provider>-allowFrom.json``：已批准的发送者 ``{"version": 1, "allow_from": [...]}``

同一 ``(provider, id)`` 只有一个有效配对码；读-判断-写在同一把锁内完成。
"""

import asyncio
import json
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from chatgate.gateway.ports import PairingRequest
from chatgate.utils.helpers import ensure_dir, get_credentials_path, safe_filename

PAIRING_CODE_LENGTH = 8
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # 去掉 0/O/1/I
PAIRING_PENDING_TTL = timedelta(minutes=60)


@dataclass
class PairingRecord:
    provider: str
    id: str
    code: str
    created_at: str
    last_seen_at: str
    meta: dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: datetime, ttl: timedelta = PAIRING_PENDING_TTL) -> bool:
        try:
            created = datetime.fromisoformat(self.created_at)
        except ValueError:
            return True
        return now - created > ttl


def generate_code(existing: set[str]) -> str:
    while True:
        code = "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))
        if code not in existing:
            return code


class JsonPairingStore:
    def __init__(self, base_dir: Path | None = None, ttl: timedelta = PAIRING_PENDING_TTL):
        self.base_dir = ensure_dir(base_dir) if base_dir else get_credentials_path()
        self.ttl = ttl
        self._lock = asyncio.Lock()

    def _pairing_path(self, provider: str) -> Path:
        return self.base_dir / f"{safe_filename(provider)}-pairing.json"

    def _allow_path(self, provider: str) -> Path:
        return self.base_dir / f"{safe_filename(provider)}-allowFrom.json"

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read {path}: {e}")
            return {}

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp.replace(path)

    def _load_requests(self, provider: str, now: datetime) -> list[PairingRecord]:
        raw = self._read_json(self._pairing_path(provider)).get("requests", [])
        records = []
        for item in raw:
            try:
                record = PairingRecord(**item)
            except TypeError:
                continue
            if not record.is_expired(now, self.ttl):
                records.append(record)
        return records

    def _save_requests(self, provider: str, records: list[PairingRecord]) -> None:
        self._write_json(
            self._pairing_path(provider),
            {"version": 1, "requests": [asdict(r) for r in records]},
        )

    def _load_allow_from(self, provider: str) -> list[str]:
        entries = self._read_json(self._allow_path(provider)).get("allow_from", [])
        return [str(e) for e in entries if str(e).strip()]

    async def upsert_request(
        self, provider: str, id: str, meta: dict[str, str] | None = None
    ) -> PairingRequest:
        async with self._lock:
            now = datetime.now(timezone.utc)
            records = self._load_requests(provider, now)
            for record in records:
                if record.id == id:
                    record.last_seen_at = now.isoformat()
                    if meta:
                        record.meta.update(meta)
                    self._save_requests(provider, records)
                    return PairingRequest(code=record.code, created=False)

            code = generate_code({r.code for r in records})
            records.append(
                PairingRecord(
                    provider=provider,
                    id=id,
                    code=code,
                    created_at=now.isoformat(),
                    last_seen_at=now.isoformat(),
                    meta=dict(meta or {}),
                )
            )
            self._save_requests(provider, records)
            logger.info(f"Created pairing request for {provider}:{id}")
            return PairingRequest(code=code, created=True)

    async def read_allow_from(self, provider: str) -> list[str]:
        return self._load_allow_from(provider)

    async def list_requests(self, provider: str) -> list[PairingRecord]:
        async with self._lock:
            return self._load_requests(provider, datetime.now(timezone.utc))

    async def approve(self, provider: str, code: str) -> str | None:
        """批准配对码，把发送者加入白名单；返回被批准的 ID，码无效时返回 None。"""
        code = code.strip().upper()
        async with self._lock:
            records = self._load_requests(provider, datetime.now(timezone.utc))
            match = next((r for r in records if r.code == code), None)
            if match is None:
                return None
            self._save_requests(provider, [r for r in records if r is not match])

            allow_from = self._load_allow_from(provider)
            if match.id.lower() not in {e.lower() for e in allow_from}:
                allow_from.append(match.id)
                self._write_json(self._allow_path(provider), {"version": 1, "allow_from": allow_from})
            logger.info(f"Approved pairing for {provider}:{match.id}")
            return match.id

"""
Service / facade layer for webhook ingestion and profile reads.

This module implements the delivery rules. It is free of storage
details: it calls `ProfileRepo` for every read and write, and all
writes go through `ProfileRepo.update()` so they share one exclusive
section.

Delivery pipeline (first failing step wins):
1. `X-External-Id` and `X-Event-Type` headers present      -> else 400
2. signature valid, unless the bypass is enabled and used   -> 400 / 401 / 500
3. raw body parses as a JSON object                         -> else 400
4. payload valid for its event type                         -> else 400
5. mutation applied and the document persisted              -> else 500

Every rejection is written to the activity log before it is raised.
Unrecognised event types are acknowledged (200) without a mutation so
the provider does not retry them.
"""

import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from activity_log import ActivityLogger
from demo_data import format_profile, generate_demo_profiles
from events import UnknownEvent, canonical_event_type, parse_event
from repo_profiles import ProfileRepo, StoreError, StoreReadError
from settings import Settings
from signature import SignatureConfigError, verify_signature
from stats import build_stats, latest_update

log = logging.getLogger(__name__)

HEADER_SIGNATURE = "x-signature"
HEADER_EXTERNAL_ID = "x-external-id"
HEADER_EVENT_TYPE = "x-event-type"
HEADER_BYPASS = "x-bypass-signature"

READ_MODES = {None, "", "webhook", "demo", "status"}


class WebhookError(Exception):
    """A delivery or read that ends in a non-2xx response."""

    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class WebhookService:
    """Delivery rules + read views.

    Example usage:
        repo = FileProfileRepo(cfg.store_file, cfg.backup_file)
        svc = WebhookService(repo, ActivityLogger(cfg.activity_log_file), cfg)
        await svc.receive(request.headers, await request.body())
    """

    def __init__(self, repo: ProfileRepo, activity: ActivityLogger, cfg: Settings):
        self.repo = repo
        self.activity = activity
        self.cfg = cfg

    async def receive(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """Process one webhook delivery and return the success body.

        Raises:
        - `WebhookError` carrying the HTTP status for every rejection
        """

        headers = {k.lower(): v for k, v in headers.items()}
        external_id = headers.get(HEADER_EXTERNAL_ID)
        event_type = headers.get(HEADER_EVENT_TYPE)

        try:
            return await self._process(headers, body, external_id, event_type)
        except WebhookError as e:
            log.warning("Webhook rejected (%s): %s [%s %s]", e.status_code, e.error, event_type, external_id)
            self.activity.log({
                "eventType": event_type,
                "externalId": external_id,
                "status": e.status_code,
                "error": e.error,
                "details": e.details,
                "success": False,
            })
            raise
        except Exception as e:
            log.exception("Webhook processing error for %s %s", event_type, external_id)
            self.activity.log({
                "eventType": event_type,
                "externalId": external_id,
                "status": 500,
                "error": "Failed to process webhook",
                "details": str(e),
                "success": False,
            })
            raise WebhookError(500, "Failed to process webhook", str(e)) from e

    async def _process(self, headers, body, external_id, event_type):
        # 1) routing headers
        if not external_id:
            raise WebhookError(400, "X-External-Id header is missing")
        if not event_type:
            raise WebhookError(400, "X-Event-Type header is missing")

        # 2) authenticity
        self._check_signature(headers, body)

        # 3) body
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookError(400, f"Malformed JSON body: {e}")
        if not isinstance(payload, dict):
            raise WebhookError(400, "Payload must be a JSON object")

        # 4) event classification
        try:
            event = parse_event(event_type, payload)
        except ValidationError as e:
            raise WebhookError(
                400, f"Invalid {canonical_event_type(event_type)} payload: {e.error_count()} error(s)"
            )

        if isinstance(event, UnknownEvent):
            log.warning("Unrecognized webhook event %s for %s: %s", event_type, external_id, payload)

        # 5) merge + persist
        profiles_processed = 0
        if event.mutates:
            limit = self.cfg.biomarker_history_limit
            try:
                await self.repo.update(
                    external_id,
                    lambda record, now: event.apply(record, now, limit),
                )
            except StoreReadError as e:
                raise WebhookError(500, "Failed to read webhook data", str(e))
            except StoreError as e:
                raise WebhookError(500, "Failed to persist webhook data", str(e))
            profiles_processed = 1

        log.info("Processed %s for %s", event_type, external_id)
        self.activity.log({
            "eventType": event_type,
            "externalId": external_id,
            "mutated": event.mutates,
            "summary": event.describe(),
            "success": True,
        })
        return {
            "success": True,
            "message": "Webhook processed successfully",
            "profilesProcessed": profiles_processed,
            "externalId": external_id,
            "eventType": event_type,
        }

    def _check_signature(self, headers: Dict[str, str], body: bytes) -> None:
        if self.cfg.signature_bypass_enabled and headers.get(HEADER_BYPASS):
            log.warning("Signature verification bypassed for testing")
            return

        signature = headers.get(HEADER_SIGNATURE)
        if not signature:
            raise WebhookError(400, "X-Signature header is missing")
        try:
            valid = verify_signature(self.cfg.webhook_secret, body, signature)
        except SignatureConfigError as e:
            raise WebhookError(500, "Webhook secret not configured", str(e))
        if not valid:
            raise WebhookError(401, "Invalid signature")

    # -- reads -------------------------------------------------------------

    async def read(self, mode: Optional[str] = None, external_id: Optional[str] = None) -> Dict[str, Any]:
        """Read view for the dashboard. Never mutates the store."""

        if mode not in READ_MODES:
            raise WebhookError(400, f"Unsupported mode: {mode}")

        if mode == "status":
            return {
                "success": True,
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        if mode == "demo":
            profiles = generate_demo_profiles(self.cfg.demo_profile_count)
            return {"success": True, "mode": "demo", "count": len(profiles), "profiles": profiles}

        if external_id:
            return await self._read_one(external_id)

        try:
            document = await self.repo.load_all()
        except StoreError as e:
            log.warning("Profile store unreadable: %s", e)
            return {"success": True, "count": 0, "profiles": [], "message": f"Profile store unreadable: {e}"}

        profiles = list(document.values())
        if not profiles:
            return {"success": True, "count": 0, "profiles": [], "message": "No webhook data received yet"}
        return {
            "success": True,
            "count": len(profiles),
            "profiles": profiles,
            "lastUpdated": latest_update(profiles),
        }

    async def _read_one(self, external_id: str) -> Dict[str, Any]:
        try:
            profile = await self.repo.get(external_id)
        except StoreError as e:
            raise WebhookError(500, "Failed to read webhook data", str(e))
        if profile is None:
            raise WebhookError(404, "Profile not found")
        return {"success": True, "data": profile}

    async def clear(self, confirm: bool) -> Dict[str, Any]:
        if not confirm:
            raise WebhookError(400, "Must confirm deletion with ?confirm=true")
        try:
            removed = await self.repo.clear()
        except StoreError as e:
            raise WebhookError(500, "Failed to clear webhook data", str(e))
        log.info("Cleared %d profiles", removed)
        self.activity.log({"eventType": "StoreCleared", "removed": removed, "success": True})
        return {"success": True, "message": "Webhook data cleared", "removed": removed}

    async def stats(self) -> Dict[str, Any]:
        try:
            document = await self.repo.load_all()
        except StoreError as e:
            raise WebhookError(500, "Failed to read webhook data", str(e))
        await self.activity.flush()
        entries = await asyncio.to_thread(self.activity.read_entries)
        return {"success": True, "stats": build_stats(document, activity=entries)}

    async def display_profiles(self, mode: str = "webhook", rng: Optional[random.Random] = None) -> Dict[str, Any]:
        """Formatted rows for the dashboard; demo rows when there is no data yet."""

        source = mode
        profiles = []
        if mode == "webhook":
            try:
                profiles = list((await self.repo.load_all()).values())
            except StoreError as e:
                log.warning("Profile store unreadable, using demo data: %s", e)
            if not profiles:
                source = "demo"
        elif mode != "demo":
            raise WebhookError(400, f"Unsupported mode: {mode}")

        if source == "demo":
            profiles = generate_demo_profiles(self.cfg.demo_profile_count, rng)

        rows = [format_profile(p, i) for i, p in enumerate(profiles)]
        return {"success": True, "source": source, "count": len(rows), "profiles": rows}

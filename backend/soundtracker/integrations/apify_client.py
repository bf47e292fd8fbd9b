from __future__ import annotations

import asyncio
from typing import Any

import httpx

APIFY_BASE = "https://api.apify.com/v2"
APIFY_SYNC_ITEMS_URL = APIFY_BASE + "/acts/{actor}/run-sync-get-dataset-items"
APIFY_START_RUN_URL = APIFY_BASE + "/acts/{actor}/runs"
APIFY_RUN_URL = APIFY_BASE + "/actor-runs/{run_id}"
APIFY_DATASET_URL = APIFY_BASE + "/datasets/{dataset_id}/items"

# Payment required / forbidden / rate limited: the account cannot run actors right now.
BLOCKED_STATUS_CODES = frozenset({402, 403, 429})
TERMINAL_RUN_STATES = frozenset({"SUCCEEDED", "FAILED", "ABORTED", "TIMED-OUT"})


class ApifyError(Exception):
    """Apify call failed. ``blocked`` marks quota, rental and rate-limit refusals."""

    def __init__(self, message: str, *, status: int | None = None, detail: dict | None = None):
        super().__init__(message)
        self.status = status
        self.detail = detail or {}

    @property
    def blocked(self) -> bool:
        return self.status in BLOCKED_STATUS_CODES


def actor_path(actor_id: str) -> str:
    """``user/actor`` -> ``user~actor``, the form the REST API expects."""
    return actor_id if "~" in actor_id else actor_id.replace("/", "~", 1)


def _check(resp: httpx.Response, what: str, **detail: Any) -> Any:
    if resp.status_code >= 400:
        raise ApifyError(
            f"{what} failed with status {resp.status_code}",
            status=resp.status_code,
            detail={"body": resp.text[:400], **detail},
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise ApifyError(f"{what} returned invalid JSON", detail={"body": resp.text[:400], **detail}) from exc


async def run_actor_get_items(
    token: str,
    actor_id: str,
    payload: dict[str, Any],
    *,
    timeout_s: float = 120,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict]:
    """Synchronous actor run: one POST that returns the dataset items.

    Connection errors are retried once; HTTP errors are not.
    """
    if not token:
        raise ApifyError("APIFY_TOKEN missing")
    actor = actor_path(actor_id)
    url = APIFY_SYNC_ITEMS_URL.format(actor=actor)

    resp = None
    async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
        for attempt in (1, 2):
            try:
                resp = await client.post(url, params={"token": token}, json=payload)
                break
            except httpx.HTTPError as exc:
                if attempt == 2:
                    raise ApifyError(f"Apify request failed: {exc}", detail={"actor": actor}) from exc
                await asyncio.sleep(1)

    data = _check(resp, f"Apify actor {actor}", actor=actor, input_keys=sorted(payload))
    if isinstance(data, list):
        return data
    return data.get("items") or data.get("data") or []


async def _wait_for_run(
    client: httpx.AsyncClient, token: str, run_id: str, *, timeout_s: float, poll_interval_s: float
) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while True:
        try:
            resp = await client.get(APIFY_RUN_URL.format(run_id=run_id), params={"token": token})
        except httpx.HTTPError as exc:
            raise ApifyError(f"Apify run status failed: {exc}", detail={"runId": run_id}) from exc
        run = _check(resp, "Apify run status", runId=run_id).get("data") or {}
        if run.get("status") in TERMINAL_RUN_STATES:
            return run
        if loop.time() > deadline:
            raise ApifyError("Apify run timed out", detail={"runId": run_id, "status": run.get("status")})
        await asyncio.sleep(poll_interval_s)


async def _read_dataset(
    client: httpx.AsyncClient, token: str, dataset_id: str, *, clean: bool, limit: int
) -> list[dict]:
    items: list[dict] = []
    page_size = min(limit, 1000)
    while len(items) < limit:
        try:
            resp = await client.get(
                APIFY_DATASET_URL.format(dataset_id=dataset_id),
                params={
                    "token": token,
                    "clean": "true" if clean else "false",
                    "limit": page_size,
                    "offset": len(items),
                },
            )
        except httpx.HTTPError as exc:
            raise ApifyError(f"Apify dataset fetch failed: {exc}", detail={"datasetId": dataset_id}) from exc
        page = _check(resp, "Apify dataset fetch", datasetId=dataset_id)
        if not isinstance(page, list):
            raise ApifyError("Invalid dataset response", detail={"datasetId": dataset_id, "body": str(page)[:400]})
        items.extend(page)
        if len(page) < page_size:
            break
    return items[:limit]


async def run_actor_and_get_dataset_items(
    token: str,
    actor_id: str,
    payload: dict[str, Any],
    *,
    clean: bool = True,
    limit: int = 100,
    timeout_s: float = 120,
    poll_interval_s: float = 1.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[list[dict], dict]:
    """
    Start an actor run, poll it to a terminal state, then page through its dataset.
    Returns (items, meta) where meta carries the run and dataset ids.
    """
    if not token:
        raise ApifyError("APIFY_TOKEN missing")
    actor = actor_path(actor_id)

    async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
        try:
            resp = await client.post(APIFY_START_RUN_URL.format(actor=actor), params={"token": token}, json=payload)
        except httpx.HTTPError as exc:
            raise ApifyError(f"Apify run start failed: {exc}", detail={"actor": actor}) from exc
        run_id = (_check(resp, "Apify run start", actor=actor).get("data") or {}).get("id")
        if not run_id:
            raise ApifyError("Apify run id missing", detail={"actor": actor, "body": resp.text[:400]})

        run = await _wait_for_run(client, token, run_id, timeout_s=timeout_s, poll_interval_s=poll_interval_s)
        meta = {
            "actorId": actor,
            "runId": run_id,
            "datasetId": run.get("defaultDatasetId"),
            "status": run.get("status"),
        }
        if run.get("status") != "SUCCEEDED":
            raise ApifyError(
                f"Apify run finished with status {run.get('status')}",
                detail={**meta, "errorMessage": run.get("errorMessage")},
            )
        if not meta["datasetId"]:
            raise ApifyError("Apify dataset missing", detail=meta)

        items = await _read_dataset(client, token, meta["datasetId"], clean=clean, limit=limit)
    return items, meta

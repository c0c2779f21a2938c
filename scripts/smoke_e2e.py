#!/usr/bin/env python3
"""
Smoke E2E test: drives the console against a running generation backend.

Generates a small ideas batch, waits for it, runs script -> caption -> image
prompt -> image on the first idea, assembles a post draft and runs checks.

Env vars:
  BASE_URL       console URL (default http://localhost:8000)
  PROJECT_ID     project to use (required)
  PERSONA_ID     persona to use (required)
  TIMEOUT_SEC    (default 300)
  POLL_INTERVAL  (default 2)
"""
from __future__ import annotations

import json
import os
import sys
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
PROJECT_ID = os.environ.get("PROJECT_ID", "")
PERSONA_ID = os.environ.get("PERSONA_ID", "")
TIMEOUT_SEC = int(os.environ.get("TIMEOUT_SEC", "300"))
POLL_INTERVAL = int(os.environ.get("POLL_INTERVAL", "2"))

SMOKE_TAG = f"smoke_{int(time.time())}"

# ── Helpers ──────────────────────────────────────────────────


class SmokeError(Exception):
    pass


def _req(method: str, path: str, body: dict | None = None) -> dict:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body is not None else None
    req = Request(url, data=data, headers={"Content-Type": "application/json"}, method=method)
    try:
        with urlopen(req, timeout=30) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raise SmokeError(f"{method} {path} → {e.code}: {e.read().decode()[:500]}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def GET(path: str) -> dict:
    return _req("GET", path)


def POST(path: str, body: dict | None = None) -> dict:
    return _req("POST", path, body)


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


def wait_for(what: str, check) -> dict:
    deadline = time.monotonic() + TIMEOUT_SEC
    while time.monotonic() < deadline:
        result = check()
        if result:
            return result
        time.sleep(POLL_INTERVAL)
    fail(f"Timed out after {TIMEOUT_SEC}s waiting for {what}")


def pipeline_of(idea_id: str) -> dict:
    listing = GET(f"/api/ideas-lab/projects/{PROJECT_ID}/ideas?refresh=true")
    for item in listing["items"]:
        if item["idea"]["id"] == idea_id:
            return item["pipeline"]
    fail(f"Idea {idea_id} disappeared from the list")


def run_stage(idea_id: str, stage: str):
    step(f"Stage {stage}")
    action = pipeline_of(idea_id)["actions"][stage]
    if action["disabled"]:
        fail(f"{stage} action is disabled")
    POST(f"/api/ideas-lab/ideas/{idea_id}/stages/{stage}", {"regenerate": action["regenerate"]})
    ok(f"{stage} queued ({action['label']})")

    def finished():
        state = next(s for s in pipeline_of(idea_id)["steps"] if s["stage"] == stage)
        if state["kind"] == "failed":
            fail(f"{stage} failed on the backend")
        return state if state["done"] else None

    state = wait_for(stage, finished)
    ok(f"{stage}: {state['status']}")


# ── Steps ────────────────────────────────────────────────────


def step1_health():
    step("1. Health check")
    if GET("/ping").get("status") != "ok":
        fail("Console did not answer /ping")
    ok("Console is up")


def step2_generate_ideas() -> str:
    step("2. Generate ideas batch")
    POST(f"/api/ideas-lab/projects/{PROJECT_ID}/ideas/generate", {
        "personaId": PERSONA_ID,
        "topic": f"Morning routines ({SMOKE_TAG})",
        "count": 2,
        "format": "short",
    })
    ok("Batch queued")

    def batch_done():
        GET(f"/api/ideas-lab/projects/{PROJECT_ID}/ideas?refresh=true")
        GET(f"/api/ideas-lab/projects/{PROJECT_ID}/logs")
        status = GET(f"/api/ideas-lab/projects/{PROJECT_ID}/status")
        return status if not status["batch"]["waiting"] else None

    status = wait_for("ideas batch", batch_done)
    ok(f"Batch completed by {status['batch']['completedBy']}")
    idea_id = status["selectedIdeaId"]
    if not idea_id:
        fail("No idea was produced")
    return idea_id


def step3_draft(idea_id: str):
    step("3. Assemble post draft and run checks")
    selection = GET(f"/api/post-drafts/by-idea/{idea_id}/selection")
    if not selection["assetIds"]:
        fail("No succeeded asset to put in the draft")
    POST(f"/api/post-drafts/by-idea/{idea_id}/assemble", {
        "captionId": selection["captionId"],
        "assetIds": selection["assetIds"],
    })
    ok("Draft assembled")
    result = POST(f"/api/post-drafts/by-idea/{idea_id}/moderate")
    moderation = result["data"]["latestModeration"]
    ok(f"Moderation: {moderation['status']}")


def main():
    print(f"\n🔬 Smoke E2E Test: {BASE_URL}")
    if not PROJECT_ID or not PERSONA_ID:
        print("PROJECT_ID and PERSONA_ID are required")
        sys.exit(2)

    try:
        step1_health()
        idea_id = step2_generate_ideas()
        for stage in ("script", "caption", "image_prompt", "image"):
            run_stage(idea_id, stage)
        step3_draft(idea_id)
        print(f"\n  ✅ PASS: idea {idea_id}\n")
    except SmokeError as e:
        print(f"\n{'='*60}")
        print(f"  ❌ FAIL: {e}")
        print(f"{'='*60}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n  ⏹ Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()

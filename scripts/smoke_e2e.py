#!/usr/bin/env python3
"""
Smoke E2E test: imports a media URL and walks it through the whole
pipeline against a running stack (API + worker).

Needs real transcription / LLM / render credentials on the server side.
Nothing is published: the scheduled post is cancelled before it is due.

Env vars:
  BASE_URL       (default http://localhost:8000)
  MEDIA_URL      (required) publicly reachable mp4/mp3
  SMOKE_USER     (default smoke-<timestamp>)
  CRON_SECRET    (optional, enables the cron checks)
  TIMEOUT_SEC    (default 600)
  POLL_INTERVAL  (default 5)
"""
from __future__ import annotations

import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
MEDIA_URL = os.environ.get("MEDIA_URL", "")
SMOKE_USER = os.environ.get("SMOKE_USER", f"smoke-{int(time.time())}")
CRON_SECRET = os.environ.get("CRON_SECRET", "")
TIMEOUT_SEC = int(os.environ.get("TIMEOUT_SEC", "600"))
POLL_INTERVAL = int(os.environ.get("POLL_INTERVAL", "5"))

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _headers(cron: bool = False) -> dict[str, str]:
    h = {"Content-Type": "application/json"}
    if cron:
        h["Authorization"] = f"Bearer {CRON_SECRET}"
    else:
        h["X-User-Id"] = SMOKE_USER
    return h


def _req(method: str, path: str, body: dict | None = None, cron: bool = False) -> dict | list:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body is not None else None
    req = Request(url, data=data, headers=_headers(cron), method=method)
    try:
        with urlopen(req, timeout=60) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raise SmokeError(f"{method} {path} -> {e.code}: {e.read().decode()[:500]}")
    except URLError as e:
        raise SmokeError(f"{method} {path} -> URLError: {e}")


def GET(path: str, cron: bool = False):
    return _req("GET", path, cron=cron)


def POST(path: str, body: dict | None = None, cron: bool = False):
    return _req("POST", path, body, cron=cron)


def DELETE(path: str):
    return _req("DELETE", path)


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


def poll(label: str, fetch, done: set[str], failed: set[str]) -> dict:
    deadline = time.time() + TIMEOUT_SEC
    last = None
    while time.time() < deadline:
        item = fetch()
        status = item.get("status")
        if status != last:
            print(f"    {label}: {status}")
            last = status
        if status in done:
            return item
        if status in failed:
            fail(f"{label} ended in {status}: {item.get('error_message')}")
        time.sleep(POLL_INTERVAL)
    fail(f"{label} timed out after {TIMEOUT_SEC}s (last status {last})")


# ── Steps ────────────────────────────────────────────────────

def step1_health():
    step("1. Health check")
    if GET("/ping").get("status") != "ok":
        fail("ping did not answer ok")
    usage = GET("/api/user/usage")
    ok(f"API up, user {SMOKE_USER} on plan {usage['plan']} ({usage['usage']}/{usage['limit']})")


def step2_import() -> int:
    step("2. Import media URL")
    ack = POST("/api/content/import-url", {"url": MEDIA_URL, "source_type": "url", "title": f"Smoke {SMOKE_USER}"})
    if not ack.get("started"):
        fail(f"processing not started: {ack}")
    ok(f"Content #{ack['content_id']} queued (run {ack['run_id']})")

    again = POST(f"/api/content/{ack['content_id']}/process")
    if again.get("started"):
        fail("second StartProcessing started another run")
    ok(f"Repeated start is a no-op ({again.get('reason')})")
    return ack["content_id"]


def step3_wait_ready(content_id: int) -> dict:
    step("3. Wait for transcribe -> analyze -> plan")
    status = poll(
        f"content #{content_id}",
        lambda: GET(f"/api/content/{content_id}/status"),
        done={"ready"},
        failed={"error"},
    )
    content = GET(f"/api/content/{content_id}")
    segments = content.get("transcript_segments") or []
    starts = [s["start"] for s in segments]
    if starts != sorted(starts):
        fail("transcript segments are not ordered by start time")
    highlights = sum(1 for s in segments if s.get("is_highlight"))
    ok(f"Ready: {len(segments)} segments, {highlights} highlights, {status['clip_count']} clips")
    return content


def step4_render(content: dict) -> int:
    step("4. Render first clip")
    content_id = content["id"]
    n = len(content.get("transcript_segments") or [])
    clips = GET(f"/api/clips?content_id={content_id}")
    if not clips:
        ok("Planner proposed no clips, creating a manual one")
        created = POST("/api/clips", {"content_id": content_id, "title": "Smoke clip", "start_time": 0, "end_time": 5})
        clip_id = created["clip_id"]
    else:
        clip_id = clips[0]["id"]
        for c in clips:
            if not 0 <= c["start_segment_index"] <= c["end_segment_index"] < n:
                fail(f"clip #{c['id']} has invalid segment indices")

    ack = POST(f"/api/clips/{clip_id}/render", {"aspect_ratio": "9:16"})
    ok(f"Render queued: {ack}")
    clip = poll(
        f"clip #{clip_id}",
        lambda: next(c for c in GET(f"/api/clips?content_id={content_id}") if c["id"] == clip_id),
        done={"ready"},
        failed={"error"},
    )
    ok(f"Clip ready: {clip['file_url']}")
    return clip_id


def step5_generate(content_id: int) -> int:
    step("5. Generate social content")
    result = POST("/api/generate", {"content_id": content_id, "platforms": ["twitter", "linkedin"], "quote_count": 2})
    ok(f"Succeeded: {result['succeeded']}  failed: {list(result['failed'])}")
    if not result["generated"]:
        fail("no drafts generated")
    return result["generated"][0]["id"]


def step6_schedule_and_cancel(gc_id: int):
    step("6. Schedule and cancel a post")
    when = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    post = POST("/api/schedule", {"platform": "twitter", "scheduled_at": when, "generated_content_id": gc_id})
    ok(f"Post #{post['id']} scheduled for {post['scheduled_for']}")
    DELETE(f"/api/schedule/{post['id']}")
    if any(p["id"] == post["id"] for p in GET("/api/schedule")):
        fail("cancelled post still listed")
    ok("Cancelled, draft restored")


def step7_cron():
    step("7. Cron endpoints")
    if not CRON_SECRET:
        ok("CRON_SECRET not set, skipped")
        return
    sweep = GET("/api/cron/publish-scheduled", cron=True)
    ok(f"Sweep: processed={sweep['processed']} published={sweep['published']} failed={sweep['failed']}")
    watchdog = GET("/api/cron/watchdog?dry_run=true", cron=True)
    ok(f"Watchdog dry run: {len(watchdog['items'])} stuck item(s)")


def step8_cleanup(content_id: int):
    step("8. Delete content")
    result = DELETE(f"/api/content/{content_id}")
    ok(f"Deleted: clips={result['clips']} generated={result['generated_contents']} posts={result['scheduled_posts']}")


# ── Main ─────────────────────────────────────────────────────

def main():
    print(f"\n🔬 Smoke E2E Test: {BASE_URL}")
    print(f"   USER={SMOKE_USER}  TIMEOUT={TIMEOUT_SEC}s  POLL={POLL_INTERVAL}s\n")
    if not MEDIA_URL:
        print("  MEDIA_URL is required")
        sys.exit(2)

    try:
        step1_health()
        content_id = step2_import()
        content = step3_wait_ready(content_id)
        step4_render(content)
        gc_id = step5_generate(content_id)
        step6_schedule_and_cancel(gc_id)
        step7_cron()
        step8_cleanup(content_id)
        print("\n  RESULT:  ✅ PASS\n")

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

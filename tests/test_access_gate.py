import asyncio
from unittest.mock import patch

import pytest

from core.access_gate import CollectionState, DownloadKind, DownloadState
from core.gateway import GatewayError
from core.session import NavigateTo, View


@pytest.fixture
def collection(make_collection, make_image):
    col = make_collection(title="Wedding", pin="5678")
    images = [make_image(col["id"], title=f"Shot {i}") for i in range(3)]
    return col, images


# ---------------------------------------------------------------------------
# Collection PIN
# ---------------------------------------------------------------------------

def test_select_locked_collection_prompts(harness, collection):
    col, _ = collection
    gate, _, _ = harness()
    assert gate.collection_state(col["id"]) == CollectionState.LOCKED
    assert gate.select_collection(col["id"]) == CollectionState.PROMPTING_PIN
    assert gate.pin_target == col["id"]
    assert gate.images == []


def test_wrong_then_right_pin(harness, collection):
    col, images = collection
    gate, _, rec = harness()
    gate.select_collection(col["id"])

    assert gate.submit_collection_pin("0000") is False
    assert "Invalid PIN. Please try again." in rec.messages("error")
    assert gate.collection_state(col["id"]) == CollectionState.PROMPTING_PIN
    assert col["id"] not in gate.unlocked

    assert gate.submit_collection_pin("5678") is True
    assert gate.collection_state(col["id"]) == CollectionState.UNLOCKED
    assert gate.selected_collection["id"] == col["id"]
    assert {i["id"] for i in gate.images} == {i["id"] for i in images}


def test_no_lockout_after_many_failures(harness, collection):
    col, _ = collection
    gate, _, _ = harness()
    gate.select_collection(col["id"])
    for _ in range(10):
        assert gate.submit_collection_pin("1111") is False
    assert gate.submit_collection_pin("5678") is True


def test_unlocked_collection_skips_prompt(harness, gateway, collection):
    col, _ = collection
    gate, _, _ = harness()
    gate.select_collection(col["id"])
    gate.submit_collection_pin("5678")
    gate.leave_collection()
    assert gate.selected_collection is None
    assert col["id"] in gate.unlocked

    with patch.object(gateway, "compare_secret", side_effect=AssertionError("no PIN check expected")):
        assert gate.select_collection(col["id"]) == CollectionState.UNLOCKED
    assert len(gate.images) == 3


def test_empty_pin_never_reaches_gateway(harness, gateway, collection):
    col, _ = collection
    gate, _, rec = harness()
    gate.select_collection(col["id"])
    with patch.object(gateway, "compare_secret") as compare:
        assert gate.submit_collection_pin("   ") is False
        compare.assert_not_called()
    assert rec.messages("error") == ["Please enter the collection PIN"]


def test_pin_check_fails_closed(harness, gateway, collection):
    col, _ = collection
    gate, _, rec = harness()
    gate.select_collection(col["id"])
    with patch.object(gateway, "compare_secret", side_effect=GatewayError("down")):
        assert gate.verify_collection_pin(col["id"], "5678") is False
        assert gate.submit_collection_pin("5678") is False
    assert col["id"] not in gate.unlocked
    assert "Failed to verify PIN" in rec.messages("error")


def test_pin_verified_before_state_changes(harness, gateway, collection):
    col, _ = collection
    gate, _, _ = harness()
    gate.select_collection(col["id"])
    observed = []
    real_compare = gateway.compare_secret

    def spy(*args, **kwargs):
        observed.append((set(gate.unlocked), gate.selected_collection))
        return real_compare(*args, **kwargs)

    with patch.object(gateway, "compare_secret", side_effect=spy):
        gate.submit_collection_pin("5678")
    assert observed == [(set(), None)]


def test_cancel_prompt(harness, collection):
    col, _ = collection
    gate, _, _ = harness()
    gate.select_collection(col["id"])
    gate.cancel_pin_prompt()
    assert gate.collection_state(col["id"]) == CollectionState.LOCKED


# ---------------------------------------------------------------------------
# Global PIN and purchase requests
# ---------------------------------------------------------------------------

def test_global_pin_defaults_when_unset(harness, make_user):
    _, token = make_user()
    gate, _, _ = harness(token)
    assert gate.global_pin == "1234"
    assert gate.verify_global_pin("1234")
    assert not gate.verify_global_pin("4321")


def test_global_pin_from_gateway(harness, gateway, make_user):
    gateway.set_download_pin("9999")
    _, token = make_user()
    gate, _, _ = harness(token)
    assert gate.verify_global_pin("9999")
    assert not gate.verify_global_pin("1234")


def test_premium_request_requires_sign_in(harness, collection):
    _, images = collection
    gate, _, rec = harness()
    assert gate.request_premium(images[0]["id"]) == DownloadState.IDLE
    assert rec.navigations == [NavigateTo(View.SIGN_IN)]
    assert rec.messages("error") == ["Please sign in first"]


def test_premium_flow_pending_then_approved(harness, gateway, make_user, collection):
    _, images = collection
    image_id = images[0]["id"]
    identity, token = make_user()
    gate, _, rec = harness(token)

    assert gate.image_controls(image_id)["premium"] == "request_premium"
    assert gate.request_premium(image_id) == DownloadState.PROMPTING_GLOBAL_PIN
    assert asyncio.run(gate.submit_global_pin("1234")) == DownloadState.REQUEST_SUBMITTED
    assert gate.download_state(image_id) == DownloadState.REQUEST_SUBMITTED

    assert gate.purchase_requests[0]["status"] == "pending"
    rows = gateway.query_table("purchase_requests", {"user_id": identity.id})
    assert len(rows) == 1 and rows[0]["image_id"] == image_id

    gateway.update_row("purchase_requests", rows[0]["id"], {"status": "approved"})
    gate.refresh_purchase_requests()
    assert gate.download_state(image_id) == DownloadState.IDLE
    assert gate.image_controls(image_id)["premium"] == "download_premium"

    gate.request_premium(image_id)
    assert rec.downloads[-1].kind == "original"
    assert rec.downloads[-1].url == images[0]["url"]


def test_wrong_global_pin(harness, gateway, make_user, collection):
    _, images = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    gate.request_premium(images[0]["id"])

    assert asyncio.run(gate.submit_global_pin("0000")) == DownloadState.IDLE
    assert "Invalid PIN. Please try again." in rec.messages("error")
    assert gateway.query_table("purchase_requests") == []
    assert gate.gate_target is None


def test_optimistic_entry_survives_insert_failure(harness, gateway, make_user, collection):
    _, images = collection
    identity, token = make_user()
    gate, _, rec = harness(token)

    with patch.object(gateway, "insert_row", side_effect=GatewayError("down")):
        entry = gate.request_premium_download(identity.id, images[0]["id"])
    assert gate.purchase_requests[0] is entry
    assert entry["status"] == "pending"
    assert entry["id"] is None
    assert rec.messages("error") == ["Failed to send request"]


def test_print_request_needs_size(harness, make_user, collection):
    _, images = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    assert gate.submit_print_request(images[0]["id"], {"frame": "black"}) is None
    assert rec.messages("error") == ["Please select a print size"]

    entry = gate.submit_print_request(images[0]["id"], {"size": "A3", "frame": "black"})
    assert entry["details"]["size"] == "A3"


def test_download_premium_requires_approval(harness, make_user, collection):
    _, images = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    assert gate.download_premium(images[0]["id"]) is False
    assert rec.downloads == []


def test_sign_out_drops_user_data(harness, make_user, collection):
    _, images = collection
    identity, token = make_user()
    gate, session, _ = harness(token)
    gate.request_premium_download(identity.id, images[0]["id"])
    gate.forget_identity()
    assert gate.purchase_requests == []


def test_download_kind_selector(harness):
    gate, _, _ = harness()
    assert gate.download_kind == DownloadKind.WATERMARK
    assert gate.select_download_kind("premium") == DownloadKind.PREMIUM
    with pytest.raises(ValueError):
        gate.select_download_kind("raw")


# ---------------------------------------------------------------------------
# Watermark, signed links, bulk
# ---------------------------------------------------------------------------

def test_watermark_download_renders(harness, collection):
    _, images = collection
    states = []

    async def renderer(url):
        states.append(gate.download_state(images[0]["id"]))
        return b"marked"

    gate, _, rec = harness(renderer=renderer)
    assert asyncio.run(gate.download_watermarked(images[0]["id"])) == DownloadState.IDLE
    assert states == [DownloadState.WATERMARKING]
    trigger = rec.downloads[-1]
    assert trigger.kind == "watermarked"
    assert trigger.content == b"marked"
    assert trigger.filename.endswith("-watermarked.jpg")


def test_watermark_failure_falls_back_to_original(harness, collection):
    _, images = collection

    async def renderer(url):
        return None

    gate, _, rec = harness(renderer=renderer)
    asyncio.run(gate.download_watermarked(images[0]["id"]))
    assert rec.downloads[-1].kind == "original"
    assert rec.downloads[-1].url == images[0]["url"]
    assert len(rec.messages("warning")) == 1
    assert gate.download_state(images[0]["id"]) == DownloadState.IDLE


def test_signed_download_requires_sign_in(harness, collection):
    _, images = collection
    gate, _, rec = harness()
    assert gate.request_signed_download(images[0]["id"]) == DownloadState.IDLE
    assert rec.messages("error") == ["Please sign in to download images"]
    assert rec.navigations == [NavigateTo(View.SIGN_IN)]


def test_signed_download_after_global_pin(harness, make_user, collection):
    _, images = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    gate.request_signed_download(images[0]["id"])
    asyncio.run(gate.submit_global_pin("1234"))

    trigger = rec.downloads[-1]
    assert trigger.kind == "signed"
    assert trigger.url.startswith(f"/api/gallery/signed/images/{images[0]['path']}?")
    assert "Download started! Link expires in 60 seconds." in rec.messages("success")


def test_collection_download_needs_unlock(harness, make_user, collection):
    col, _ = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    assert gate.request_collection_download() is False
    assert rec.messages("error") == ["Unlock the collection first"]


def test_collection_download_triggers_each_image(harness, make_user, collection):
    col, images = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    gate.select_collection(col["id"])
    gate.submit_collection_pin("5678")
    rec.notes.clear()

    count = asyncio.run(gate.submit_collection_download_pin("1234"))
    assert count == 3
    assert [d.image_id for d in rec.downloads] == [i["id"] for i in gate.images]
    assert rec.sleeps == [0.1, 0.1]
    assert rec.messages("success") == ["Downloaded 3 images"]


def test_collection_download_wrong_pin(harness, make_user, collection):
    col, _ = collection
    _, token = make_user()
    gate, _, rec = harness(token)
    gate.select_collection(col["id"])
    gate.submit_collection_pin("5678")

    assert asyncio.run(gate.submit_collection_download_pin("0000")) is None
    assert rec.downloads == []


def test_empty_collection_download(harness, make_user, make_collection):
    col = make_collection(title="Empty", pin="1111")
    _, token = make_user()
    gate, _, rec = harness(token)
    gate.select_collection(col["id"])
    gate.submit_collection_pin("1111")

    assert asyncio.run(gate.submit_collection_download_pin("1234")) == 0
    assert rec.messages("info") == ["This collection has no images"]


def test_time_limited_link_failure(harness, gateway, collection):
    _, images = collection
    gate, _, rec = harness()
    with patch.object(gateway, "get_signed_url", side_effect=GatewayError("down")):
        assert gate.create_time_limited_link(images[0]["path"]) is None
    assert rec.messages("error") == ["Failed to download image"]


def test_cached_global_pin_survives_admin_change(harness, gateway, make_user):
    _, token = make_user()
    gate, _, _ = harness(token)
    gateway.set_download_pin("2468")

    assert gate.verify_global_pin("1234")
    assert not gate.verify_global_pin("2468")

    gate.load_dashboard()
    assert gate.verify_global_pin("2468")
    assert not gate.verify_global_pin("1234")


def test_collection_download_replaces_image_prompt(harness, make_user, collection):
    col, images = collection
    image_id = images[0]["id"]
    _, token = make_user()
    gate, _, _ = harness(token)
    gate.select_collection(col["id"])
    gate.submit_collection_pin("5678")

    gate.request_premium(image_id)
    assert gate.download_state(image_id) == DownloadState.PROMPTING_GLOBAL_PIN
    assert asyncio.run(gate.submit_collection_download_pin("1234")) == 3
    assert gate.download_state(image_id) == DownloadState.IDLE


def test_new_prompt_releases_previous_image(harness, make_user, collection):
    _, images = collection
    first, second = images[0]["id"], images[1]["id"]
    _, token = make_user()
    gate, _, _ = harness(token)

    gate.request_premium(first)
    gate.request_signed_download(second)
    assert gate.download_state(first) == DownloadState.IDLE
    assert gate.download_state(second) == DownloadState.PROMPTING_GLOBAL_PIN

    gate.request_premium(first)
    assert gate.download_state(second) == DownloadState.IDLE
    assert gate.gate_target[1] == first

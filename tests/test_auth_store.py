import json
from pathlib import Path

import pytest

from miau.connection.auth import AuthStateError, FileAuthStore
from miau.connection.events import CredentialsUpdate


@pytest.mark.anyio
async def test_load_missing_returns_fresh_state(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")

    state = await store.load()

    assert state.creds == {}
    assert state.keys == {}
    assert not state.registered
    assert not store.path.exists()


@pytest.mark.anyio
async def test_save_merges_and_persists(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    await store.save(CredentialsUpdate(creds={"noise_key": "abc"}))
    await store.save(
        CredentialsUpdate(
            creds={"registered": True},
            keys={"pre-key": {"1": {"public": "x"}, "2": {"public": "y"}}},
        )
    )
    await store.save(CredentialsUpdate(creds={}, keys={"pre-key": {"1": None}}))

    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["creds"] == {"noise_key": "abc", "registered": True}
    assert raw["keys"] == {"pre-key": {"2": {"public": "y"}}}

    reloaded = await FileAuthStore(tmp_path / "auth").load()
    assert reloaded.registered
    assert reloaded.keys == {"pre-key": {"2": {"public": "y"}}}


@pytest.mark.anyio
async def test_removing_last_key_drops_bucket(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    await store.save(CredentialsUpdate(creds={}, keys={"session": {"a": {"k": 1}}}))
    await store.save(CredentialsUpdate(creds={}, keys={"session": {"a": None}}))

    state = await store.load()
    assert state.keys == {}


@pytest.mark.anyio
async def test_corrupt_file_raises(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{broken", encoding="utf-8")

    with pytest.raises(AuthStateError) as exc:
        await store.load()

    assert exc.value.path == store.path


@pytest.mark.anyio
async def test_unknown_version_raises(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"version": 99, "creds": {}}), encoding="utf-8")

    with pytest.raises(AuthStateError, match="version 99"):
        await store.load()


@pytest.mark.anyio
async def test_clear_removes_credentials(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    await store.save(CredentialsUpdate(creds={"registered": True}))
    assert store.path.exists()

    await store.clear()

    assert not store.path.exists()
    assert not (await store.load()).registered


@pytest.mark.anyio
async def test_binary_credentials_survive_reload(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    await store.save(
        CredentialsUpdate(
            creds={"noiseKey": {"private": b"\x00\x01\x02", "public": b"\xff"}},
            keys={"pre-key": {"1": {"keyPair": [b"\x10", "plain"]}}},
        )
    )

    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert raw["creds"]["noiseKey"]["private"] == {"type": "Buffer", "data": "AAEC"}

    reloaded = await FileAuthStore(tmp_path / "auth").load()
    assert reloaded.creds["noiseKey"] == {"private": b"\x00\x01\x02", "public": b"\xff"}
    assert reloaded.keys == {"pre-key": {"1": {"keyPair": [b"\x10", "plain"]}}}


@pytest.mark.anyio
async def test_bad_buffer_payload_raises(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    store.path.parent.mkdir(parents=True)
    store.path.write_text(
        json.dumps(
            {"version": 1, "creds": {"noiseKey": {"type": "Buffer", "data": "@@@"}}}
        ),
        encoding="utf-8",
    )

    with pytest.raises(AuthStateError, match="bad buffer"):
        await store.load()


@pytest.mark.anyio
async def test_unencodable_update_keeps_last_good_state(tmp_path: Path) -> None:
    store = FileAuthStore(tmp_path / "auth")
    await store.save(CredentialsUpdate(creds={"registered": True}))
    before = store.path.read_text(encoding="utf-8")

    with pytest.raises(AuthStateError, match="cannot encode"):
        await store.save(CredentialsUpdate(creds={"obj": object()}))

    assert store.path.read_text(encoding="utf-8") == before
    assert "obj" not in (await store.load()).creds

    await store.save(CredentialsUpdate(creds={"me": "5511000001111@s.whatsapp.net"}))
    state = await FileAuthStore(tmp_path / "auth").load()
    assert state.creds == {"registered": True, "me": "5511000001111@s.whatsapp.net"}

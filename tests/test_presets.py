import pytest

from wallet_workspace.db import connect_db, parse_database_config
from wallet_workspace.db_migrations import apply_migrations
from wallet_workspace.parsers import MalformedInputError
from wallet_workspace.presets import create_preset, list_presets, parse_preset_request, sort_authors


@pytest.fixture()
def db(tmp_path):
    config = parse_database_config(str(tmp_path / "presets.sqlite"), "")
    apply_migrations(config)
    conn = connect_db(config)
    for user_id, username, name in (("u1", "alice", "alice"), ("u2", "bob", "Bob")):
        conn.execute(
            "INSERT INTO users (id, username, password_hash, name, created_at) VALUES (?, ?, 'hash', ?, '2025-01-01T00:00:00Z')",
            (user_id, username, name),
        )
    conn.commit()
    yield conn
    conn.close()


FILTER_TEMPLATE = {
    "columnKey": "pnl",
    "dataType": "numeric",
    "operator": {"type": "numeric", "operator": "greaterThan"},
    "value": "100",
}

ANALYSIS_CHAIN = {
    "resultName": "risk",
    "steps": [
        {"columnKey": "pnl", "methodId": "bell-curve-distance"},
        {"columnKey": "vol", "methodId": "conditional-flag", "config": {"mode": "min", "threshold": 10}},
    ],
    "operators": ["+"],
}


def test_parse_filter_single_preset_drops_id():
    preset_type, name, body = parse_preset_request("filter", {"type": "single", "name": "  Winners ", "template": FILTER_TEMPLATE})

    assert preset_type == "single"
    assert name == "Winners"
    assert "id" not in body
    assert body["value"] == 100.0


def test_parse_preset_request_rejects_bad_input():
    with pytest.raises(MalformedInputError):
        parse_preset_request("filter", {"type": "single", "name": "", "template": FILTER_TEMPLATE})
    with pytest.raises(MalformedInputError):
        parse_preset_request("filter", {"type": "bundle", "name": "x"})
    with pytest.raises(MalformedInputError):
        parse_preset_request("filter", {"type": "chain", "name": "x", "templates": []})
    with pytest.raises(MalformedInputError):
        parse_preset_request("analysis", {"type": "chain", "name": "x", "chain": {**ANALYSIS_CHAIN, "operators": []}})
    with pytest.raises(MalformedInputError):
        parse_preset_request("filter", {"type": "single", "name": "x", "template": {**FILTER_TEMPLATE, "description": "d" * 501}})


def test_presets_round_trip_through_database(db):
    alice = {"id": "u1", "name": "alice", "image": None}
    bob = {"id": "u2", "name": "Bob", "image": None}

    _, name, body = parse_preset_request("filter", {"type": "chain", "name": "Big winners", "templates": [FILTER_TEMPLATE]})
    created = create_preset(db, "filter", "chain", name, body, bob)
    _, name, body = parse_preset_request("filter", {"type": "single", "name": "Winners", "template": FILTER_TEMPLATE})
    create_preset(db, "filter", "single", name, body, alice)

    listing = list_presets(db, "filter")

    assert [preset["name"] for preset in listing["presets"]] == ["Winners"]
    assert listing["chains"][0]["id"] == created["id"]
    assert listing["chains"][0]["templates"][0]["operator"]["operator"] == "greaterThan"
    assert listing["chains"][0]["createdBy"] == bob
    assert [author["name"] for author in listing["authors"]] == ["alice", "Bob"]

    only_bob = list_presets(db, "filter", "u2")
    assert only_bob["presets"] == []
    assert len(only_bob["chains"]) == 1
    assert len(list_presets(db, "filter", "all")["presets"]) == 1


def test_analysis_chain_preset_is_stored_normalized(db):
    author = {"id": "u1", "name": "alice", "image": None}
    _, name, body = parse_preset_request("analysis", {"type": "chain", "name": "Risk", "chain": ANALYSIS_CHAIN})

    create_preset(db, "analysis", "chain", name, body, author)
    stored = list_presets(db, "analysis")["chains"][0]["chain"]

    assert stored["operators"] == ["+"]
    assert stored["steps"][1]["config"] == {"mode": "min", "threshold": 10}
    assert stored["steps"][0]["weight"] == 1


def test_sort_authors_puts_unnamed_last():
    authors = [{"id": "3", "name": None}, {"id": "2", "name": "zed"}, {"id": "1", "name": "Amy"}]

    assert [author["id"] for author in sort_authors(authors)] == ["1", "2", "3"]

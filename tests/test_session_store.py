from __future__ import annotations

import json
import os
from pathlib import Path

from agentdesk.shared.services.path_codec import encode_path
from agentdesk.shared.services.session_store import SessionStore, clean_prompt


PROJECT_PATH = "/work/demo-app"
SLUG = encode_path(PROJECT_PATH)


def _user(text: str, **extra) -> dict:
    record = {
        "type": "user",
        "message": {"role": "user", "content": text},
        "cwd": PROJECT_PATH,
    }
    record.update(extra)
    return record


def _write_transcript(project_dir: Path, session_id: str, records: list, mtime: float | None = None) -> Path:
    project_dir.mkdir(parents=True, exist_ok=True)
    path = project_dir / f"{session_id}.jsonl"
    path.write_text("\n".join(
        r if isinstance(r, str) else json.dumps(r) for r in records
    ) + "\n", encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _write_index(project_dir: Path, entries: list, envelope: bool = True) -> None:
    project_dir.mkdir(parents=True, exist_ok=True)
    data = {"version": 1, "entries": entries} if envelope else entries
    (project_dir / "sessions-index.json").write_text(json.dumps(data), encoding="utf-8")


def test_clean_prompt_strips_ide_tags() -> None:
    assert clean_prompt("<ide_opened_file>a.py</ide_opened_file> fix it") == "fix it"
    assert clean_prompt("hello <ide_opened_file>truncated") == "hello"
    assert clean_prompt("<ide_opened_file>x</ide_opened_file>") == ""
    assert clean_prompt(None) == ""


def test_missing_root_yields_empty_results(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "nope")
    assert store.list_projects() == []
    assert store.list_sessions(PROJECT_PATH) == []
    assert store.list_all_sessions() == []
    assert store.load_messages(PROJECT_PATH, "abc") == []


def test_list_projects_uses_index_project_path(tmp_path: Path) -> None:
    _write_index(tmp_path / SLUG, [{"sessionId": "s1", "projectPath": PROJECT_PATH}])
    _write_transcript(tmp_path / "-other-proj", "s2", [_user("hi")])

    projects = {p.encoded_path: p for p in SessionStore(tmp_path).list_projects()}

    assert projects[SLUG].path == PROJECT_PATH
    assert projects[SLUG].name == "demo-app"
    # No index: decoded heuristically
    assert projects["-other-proj"].path.endswith("proj")
    assert projects["-other-proj"].to_dict()["encodedPath"] == "-other-proj"


def test_list_sessions_merges_index_and_unindexed_transcripts(tmp_path: Path) -> None:
    project_dir = tmp_path / SLUG
    _write_index(project_dir, [{
        "sessionId": "indexed",
        "projectPath": PROJECT_PATH,
        "firstPrompt": "from index",
        "summary": "Indexed summary",
        "modified": "2024-01-01T00:00:00.000Z",
    }])
    # Same id as the index entry: the index wins
    _write_transcript(project_dir, "indexed", [_user("from transcript")])
    _write_transcript(project_dir, "loose", [
        {"type": "summary", "summary": "x"},
        _user("<ide_opened_file>a.py</ide_opened_file>"),
        _user("<ide_opened_file>a.py</ide_opened_file> real question", gitBranch="main"),
    ], mtime=1_800_000_000)

    entries = SessionStore(tmp_path).list_sessions(PROJECT_PATH)

    assert [e.session_id for e in entries] == ["loose", "indexed"]
    loose, indexed = entries
    assert indexed.first_prompt == "from index"
    assert loose.first_prompt == "real question"
    assert loose.project_path == PROJECT_PATH
    assert loose.git_branch == "main"
    assert loose.modified.startswith("2027-01-15")


def test_list_sessions_accepts_bare_array_index_and_slug(tmp_path: Path) -> None:
    _write_index(tmp_path / SLUG, [{"sessionId": "a"}, {"nope": 1}, "junk"], envelope=False)

    entries = SessionStore(tmp_path).list_sessions(SLUG)

    assert [e.session_id for e in entries] == ["a"]


def test_corrupt_index_degrades_to_transcripts(tmp_path: Path) -> None:
    project_dir = tmp_path / SLUG
    project_dir.mkdir(parents=True)
    (project_dir / "sessions-index.json").write_text("{not json", encoding="utf-8")
    _write_transcript(project_dir, "s1", [_user("hello")])

    entries = SessionStore(tmp_path).list_sessions(PROJECT_PATH)

    assert [e.session_id for e in entries] == ["s1"]


def test_transcript_without_user_message_is_untitled(tmp_path: Path) -> None:
    _write_transcript(tmp_path / SLUG, "empty", [{"type": "system", "cwd": PROJECT_PATH}])

    (entry,) = SessionStore(tmp_path).list_sessions(PROJECT_PATH)

    assert entry.first_prompt == "Untitled"


def test_first_prompt_scan_window_is_bounded(tmp_path: Path) -> None:
    filler = {"type": "system", "text": "x" * 400}
    _write_transcript(tmp_path / SLUG, "late", [filler] * 5 + [_user("too late")])

    (entry,) = SessionStore(tmp_path, first_prompt_scan_bytes=1024).list_sessions(PROJECT_PATH)

    assert entry.first_prompt == "Untitled"


def test_load_messages_skips_malformed_lines(tmp_path: Path) -> None:
    _write_transcript(tmp_path / SLUG, "s1", [
        _user("one"),
        "{broken",
        "",
        {"type": "assistant", "message": {"role": "assistant", "content": []}},
    ])

    messages = SessionStore(tmp_path).load_messages(PROJECT_PATH, "s1")

    assert [m["type"] for m in messages] == ["user", "assistant"]


def test_load_messages_resolves_directory_through_index(tmp_path: Path) -> None:
    # Directory name does not match the encoding of the recorded path
    project_dir = tmp_path / "-legacy-name"
    _write_index(project_dir, [{"sessionId": "s1", "projectPath": "/renamed/project"}])
    _write_transcript(project_dir, "s1", [_user("hi")])

    store = SessionStore(tmp_path)

    assert len(store.load_messages("/renamed/project", "s1")) == 1
    assert len(store.load_messages("-legacy-name", "s1")) == 1
    assert store.load_messages("/unknown/project", "s1") == []


def test_load_messages_rejects_path_traversal(tmp_path: Path) -> None:
    _write_transcript(tmp_path / SLUG, "s1", [_user("hi")])
    store = SessionStore(tmp_path)

    assert store.load_messages(PROJECT_PATH, "../s1") == []
    assert store.load_messages(PROJECT_PATH, "a/b") == []


def test_project_argument_cannot_escape_store_root(tmp_path: Path) -> None:
    root = tmp_path / "projects"
    _write_transcript(root / SLUG, "s1", [_user("inside")])
    outside = tmp_path / "outside"
    _write_transcript(outside, "secret", [_user("do not read me")])
    store = SessionStore(root)

    assert store.load_messages(str(outside), "secret") == []
    assert store.load_messages("../outside", "secret") == []
    assert store.find_encoded_dir(str(outside)) is None
    assert store.list_sessions("-x/../../outside") == []
    assert [e.session_id for e in store.list_sessions(SLUG)] == ["s1"]


def test_list_all_sessions_skips_sidechains_and_sorts(tmp_path: Path) -> None:
    _write_index(tmp_path / SLUG, [
        {"sessionId": "old", "projectPath": PROJECT_PATH, "summary": "Old work", "modified": "2024-01-01T00:00:00Z"},
        {"sessionId": "side", "isSidechain": True, "modified": "2024-06-01T00:00:00Z"},
    ])
    _write_transcript(tmp_path / SLUG, "old", [_user("old prompt")])
    _write_transcript(tmp_path / "-work-other", "new", [
        _user("newest prompt", cwd="/work/other"),
    ], mtime=1_900_000_000)

    sessions = SessionStore(tmp_path).list_all_sessions()

    assert [s.id for s in sessions] == ["new", "old"]
    new, old = sessions
    assert new.title == "newest prompt"
    assert new.project_name == "other"
    assert old.title == "Old work"
    assert old.last_message == "old prompt"
    assert old.to_dict()["projectPath"] == PROJECT_PATH


def test_watch_for_changes_missing_root_returns_none(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "missing")
    assert store.watch_for_changes(lambda: None) is None

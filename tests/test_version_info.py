from netatmo_presence.version_info import get_app_version_info, read_app_version


def test_reads_first_non_empty_candidate(tmp_path):
    empty = tmp_path / "EMPTY"
    empty.write_text("\n", encoding="utf-8")
    version_file = tmp_path / "VERSION"
    version_file.write_text("2.3.4\n", encoding="utf-8")

    candidates = [tmp_path / "missing", empty, version_file]

    assert read_app_version(candidates) == "2.3.4"
    assert get_app_version_info(candidates) == {"version": "2.3.4", "source": str(version_file)}


def test_unknown_when_no_candidate(tmp_path):
    assert read_app_version([tmp_path / "missing"]) == "unknown"
    assert get_app_version_info([tmp_path / "missing"]) == {
        "version": "unknown",
        "source": "unknown",
    }


def test_repository_version_file_is_readable(workspace_root):
    expected = (workspace_root / "VERSION").read_text(encoding="utf-8").strip()
    assert read_app_version([workspace_root / "VERSION"]) == expected

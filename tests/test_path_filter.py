import pytest

from live_mirror import PathFilter, load_blacklist


@pytest.mark.parametrize(
    "name",
    [
        "4913",
        "notes.txt.swp",
        "notes.txt.swo",
        "notes.txt.swn",
        ".notes.txt.swx",
        "#notes.txt#",
        ".#notes.txt",
        "notes.txt~",
        "notes.bak",
        "upload.tmp",
        "project.code-workspace.temp",
        ".vscode",
        ".~lock.report.odt#",
    ],
)
def test_temporary_files_are_excluded(name):
    assert PathFilter().is_excluded(name)


@pytest.mark.parametrize("name", ["notes.txt", "swp", "backup", "4913.txt", "#notes", "src", ""])
def test_regular_names_are_kept(name):
    assert not PathFilter().is_excluded(name)


def test_blacklist_is_exact_match():
    pf = PathFilter(blacklist=["node_modules", "secret.env"])

    assert pf.is_blacklisted("node_modules")
    assert pf.skips("secret.env")
    assert not pf.skips("node_modules2")
    assert not pf.is_blacklisted("secret")


def test_skips_any_checks_every_component():
    pf = PathFilter(blacklist=["build"])

    assert pf.skips_any(["src", "build", "out.o"])
    assert pf.skips_any(["src", "main.c.swp"])
    assert not pf.skips_any(["src", "main.c"])


def test_load_blacklist_reads_one_name_per_line(tmp_path):
    listing = tmp_path / "blacklist.txt"
    listing.write_text("node_modules\r\n.git\n\ncache dir\n", encoding="utf-8")

    names = load_blacklist({"BLACKLIST_PATH": str(listing)})

    assert names == frozenset({"node_modules", ".git", "cache dir"})


def test_load_blacklist_unset_means_empty():
    assert load_blacklist({}) == frozenset()


def test_load_blacklist_unreadable_means_empty(tmp_path):
    assert load_blacklist({"BLACKLIST_PATH": str(tmp_path / "missing.txt")}) == frozenset()


def test_load_blacklist_defaults_to_process_environment(tmp_path, monkeypatch):
    listing = tmp_path / "blacklist.txt"
    listing.write_text("vendor\n", encoding="utf-8")
    monkeypatch.setenv("BLACKLIST_PATH", str(listing))

    assert load_blacklist() == frozenset({"vendor"})

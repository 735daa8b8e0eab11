import os

from tapvsock.fsutil import umask


def test_umask_returns_previous_value():
    original = umask(0o027)
    try:
        expected = 0 if os.name == "nt" else 0o027
        assert umask(0o077) == expected
    finally:
        umask(original)


def test_umask_affects_created_files(tmp_path):
    original = umask(0o077)
    try:
        path = tmp_path / "f"
        path.touch(mode=0o666)
        mode = path.stat().st_mode & 0o777
    finally:
        previous = umask(original)
    expected_previous = 0 if os.name == "nt" else 0o077
    assert previous == expected_previous
    if os.name == "nt":
        assert mode & 0o400
    else:
        assert mode & 0o077 == 0
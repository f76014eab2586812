import pytest

from devhelper.ingest import read_code_file


def test_reads_text(tmp_path):
    path = tmp_path / "f.py"
    path.write_text("def f(x): return x*2\n", encoding="utf-8")
    assert read_code_file(str(path)) == "def f(x): return x*2\n"


def test_undecodable_bytes_replaced(tmp_path):
    path = tmp_path / "bin.txt"
    path.write_bytes(b"ok\xff")
    assert read_code_file(str(path)) == "ok�"


def test_directory_rejected(tmp_path):
    with pytest.raises(ValueError):
        read_code_file(str(tmp_path))


def test_size_limit(tmp_path):
    path = tmp_path / "big.txt"
    path.write_text("x" * 20, encoding="utf-8")
    with pytest.raises(ValueError, match="too large"):
        read_code_file(str(path), max_bytes=10)

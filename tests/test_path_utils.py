"""物化路径与 Blob key 辅助函数的单元测试。"""

import pytest

from app.packages.workspace.core.exceptions import ValidationError
from app.packages.workspace.utils.path_utils import (
    blob_key_for,
    blob_prefix_for,
    ensure_path_length,
    is_same_or_descendant,
    materialize,
    normalize_name,
    rebase_path,
)


def test_materialize_root_and_nested():
    assert materialize(None, "src") == "src"
    assert materialize("", "README.md") == "README.md"
    assert materialize("src", "index.ts") == "src/index.ts"
    assert materialize("src/components", "  Button.tsx ") == "src/components/Button.tsx"


@pytest.mark.parametrize("bad", ["", "   ", "a/b", ".", "..", None, 42, "x" * 256, "bad\ud800"])
def test_normalize_name_rejects_invalid(bad):
    with pytest.raises(ValidationError):
        normalize_name(bad)


def test_normalize_name_trims_and_keeps_case():
    assert normalize_name("  Readme.MD  ") == "Readme.MD"
    assert normalize_name("...") == "..."


def test_is_same_or_descendant_respects_segment_boundary():
    assert is_same_or_descendant("src", "src")
    assert is_same_or_descendant("src/a/b", "src")
    assert not is_same_or_descendant("src2/a", "src")
    assert not is_same_or_descendant("sr", "src")


def test_rebase_path():
    assert rebase_path("src", "src", "lib") == "lib"
    assert rebase_path("src/a/b.ts", "src", "lib/core") == "lib/core/a/b.ts"
    assert rebase_path("srcx/a.ts", "src", "lib") == "srcx/a.ts"


def test_ensure_path_length():
    assert ensure_path_length("a" * 1024) == "a" * 1024
    with pytest.raises(ValidationError):
        ensure_path_length("a" * 1025)


def test_blob_key_layout():
    assert blob_key_for("p1", "src/index.ts") == "p1/src/index.ts"
    assert blob_prefix_for("p1") == "p1/"

import json
from pathlib import Path

import pytest

from build_notebook import parse_percent_script, build_notebook

NOTEBOOK_SCRIPT = Path(__file__).resolve().parent.parent / "notebooks" / "pbmc3k_guided_clustering.py"

SCRIPT = """\
# %% [markdown]
# # Title
#
# Some text

# %%
import scanpy as sc

x = 1

# %%
print(x)
"""


def test_parse_percent_script():
    cells = parse_percent_script(SCRIPT)

    assert [cell_type for cell_type, _ in cells] == ["markdown", "code", "code"]
    assert cells[0][1] == ["# Title", "", "Some text"]
    assert cells[1][1] == ["import scanpy as sc", "", "x = 1"]


def test_parse_keeps_leading_code():
    cells = parse_percent_script("import os\n\n# %%\nprint(1)\n")
    assert cells == [("code", ["import os"]), ("code", ["print(1)"])]


def test_build_notebook(tmp_path):
    script = tmp_path / "demo.py"
    script.write_text(SCRIPT, encoding="utf-8")

    out = build_notebook(script)
    assert out == tmp_path / "demo.ipynb"

    nb = json.loads(out.read_text(encoding="utf-8"))
    assert nb["nbformat"] == 4
    assert nb["metadata"]["kernelspec"]["name"] == "python3"
    assert nb["cells"][0]["cell_type"] == "markdown"
    assert nb["cells"][1]["source"] == ["import scanpy as sc\n", "\n", "x = 1"]
    assert nb["cells"][1]["outputs"] == []
    assert "outputs" not in nb["cells"][0]


def test_build_notebook_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        build_notebook(tmp_path / "missing.py")

    empty = tmp_path / "empty.py"
    empty.write_text("\n\n")
    with pytest.raises(ValueError):
        build_notebook(empty)


def test_tutorial_notebook_builds(tmp_path):
    out = build_notebook(NOTEBOOK_SCRIPT, tmp_path / "pbmc3k.ipynb")
    nb = json.loads(out.read_text(encoding="utf-8"))

    kinds = {cell["cell_type"] for cell in nb["cells"]}
    assert kinds == {"markdown", "code"}
    assert len(nb["cells"]) > 20


def test_build_notebook_keeps_unicode(tmp_path):
    script = tmp_path / "symbols.py"
    script.write_text('# %% [markdown]\n# ## ⚠️ Check\n\n# %%\nprint("✓ done")  # 🔧\n', encoding="utf-8")

    out = build_notebook(script)
    nb = json.loads(out.read_text(encoding="utf-8"))
    assert nb["cells"][0]["source"] == ["## ⚠️ Check"]
    assert nb["cells"][1]["source"] == ['print("✓ done")  # 🔧']

#!/usr/bin/env python3
"""
Convert percent-format (# %%) scripts into Jupyter notebooks.
Creates notebooks ready for Jupyter or Colab without extra tooling.

python build_notebook.py notebooks/pbmc3k_guided_clustering.py
"""

import argparse
import json
from pathlib import Path

CELL_MARKER = "# %%"
MARKDOWN_MARKER = "# %% [markdown]"


def create_cell(cell_type, source, metadata=None):
    """Create a notebook cell"""
    cell = {
        "cell_type": cell_type,
        "metadata": metadata or {},
        "source": source if isinstance(source, list) else [source],
    }
    if cell_type == "code":
        cell["execution_count"] = None
        cell["outputs"] = []
    return cell


def create_notebook_metadata():
    """Standard notebook metadata"""
    return {
        "colab": {"provenance": []},
        "kernelspec": {
            "display_name": "Python 3",
            "language": "python",
            "name": "python3",
        },
        "language_info": {
            "codemirror_mode": {"name": "ipython", "version": 3},
            "file_extension": ".py",
            "mimetype": "text/x-python",
            "name": "python",
            "version": "3.10.0",
        },
    }


def _strip_blank(lines):
    while lines and not lines[0].strip():
        lines = lines[1:]
    while lines and not lines[-1].strip():
        lines = lines[:-1]
    return lines


def _uncomment(line):
    if line.startswith("# "):
        return line[2:]
    if line.rstrip() == "#":
        return ""
    return line


def _source_lines(lines):
    """Notebook JSON source: every line but the last keeps its newline"""
    return [line + "\n" for line in lines[:-1]] + lines[-1:]


def parse_percent_script(text):
    """Split a percent-format script into (cell_type, lines) pairs

    Text before the first marker becomes a code cell when it is not blank.
    Markdown cell lines have their leading '# ' removed.
    """
    cells = []
    cell_type = "code"
    current = []

    def flush():
        body = _strip_blank(current)
        if cell_type == "markdown":
            body = [_uncomment(line) for line in body]
        if body:
            cells.append((cell_type, body))

    for line in text.splitlines():
        if line.startswith(CELL_MARKER):
            flush()
            current = []
            cell_type = "markdown" if line.startswith(MARKDOWN_MARKER) else "code"
            continue
        current.append(line)
    flush()

    return cells


def build_notebook(script_path, output_path=None):
    """Write the .ipynb for a percent-format script

    Args:
        script_path: Path to the .py script
        output_path: Target .ipynb (default: same name next to the script)

    Returns:
        Path of the written notebook
    """
    script_path = Path(script_path)
    if not script_path.is_file():
        raise FileNotFoundError(f"Script not found: {script_path}")

    output_path = Path(output_path) if output_path else script_path.with_suffix(".ipynb")

    cells = [
        create_cell(cell_type, _source_lines(lines))
        for cell_type, lines in parse_percent_script(script_path.read_text(encoding="utf-8"))
    ]
    if not cells:
        raise ValueError(f"No cells found in {script_path}")

    notebook = {
        "cells": cells,
        "metadata": create_notebook_metadata(),
        "nbformat": 4,
        "nbformat_minor": 4,
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(notebook, f, indent=1, ensure_ascii=False)
        f.write("\n")

    print(f"✓ {output_path} ({len(cells)} cells)")
    return output_path


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Build .ipynb notebooks from percent-format scripts")
    parser.add_argument(
        "scripts",
        nargs="*",
        default=["notebooks/pbmc3k_guided_clustering.py"],
        help="Percent-format scripts to convert",
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Directory for the notebooks (default: next to each script)",
    )
    args = parser.parse_args()

    for script in args.scripts:
        out = None
        if args.output_dir:
            out = Path(args.output_dir) / Path(script).with_suffix(".ipynb").name
        build_notebook(script, out)

#!/usr/bin/env python3
"""
Quality control filter parameters for the PBMC 3k tutorial

This file centralizes all QC thresholds used in the pipeline.
Modify these values to adjust filtering stringency.
"""

# Applied when the analysis object is created from the raw matrix
OBJECT_FILTERS = {
    "min_cells": 3,  # Keep genes detected in at least this many cells
    "min_features": 200,  # Keep cells with at least this many detected genes
}

# Cell-level filters (strict: min < value < max)
CELL_FILTERS = {
    "min_genes": 200,  # Minimum genes detected per cell
    "max_genes": 2500,  # Maximum genes detected per cell (multiplets)
    "max_mt_pct": 5,  # Maximum mitochondrial gene percentage (dying cells)
}

# Mitochondrial gene pattern
GENE_PATTERNS = {
    "mt_pattern": "MT-",  # Human mitochondrial genes (use "mt-" for mouse)
}


def get_filter_summary():
    """Return a formatted summary of current filter settings"""
    summary = [
        "=== QC Filter Settings ===",
        "\nObject creation:",
        f"  - Genes detected in >= {OBJECT_FILTERS['min_cells']} cells",
        f"  - Cells with >= {OBJECT_FILTERS['min_features']} genes",
        "\nCell-level filters:",
        f"  - Genes per cell: {CELL_FILTERS['min_genes']} < n < {CELL_FILTERS['max_genes']}",
        f"  - Max mitochondrial %: {CELL_FILTERS['max_mt_pct']}%",
        f"  - Mitochondrial prefix: {GENE_PATTERNS['mt_pattern']}",
    ]

    return "\n".join(summary)


def validate_filters(cell_filters=None, object_filters=None):
    """Validate that filter parameters make sense

    Args:
        cell_filters: Dict shaped like CELL_FILTERS (defaults to module value)
        object_filters: Dict shaped like OBJECT_FILTERS (defaults to module value)
    """
    cell_filters = CELL_FILTERS if cell_filters is None else cell_filters
    object_filters = OBJECT_FILTERS if object_filters is None else object_filters
    errors = []

    if cell_filters["min_genes"] >= cell_filters["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if not 0 <= cell_filters["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    if object_filters["min_cells"] < 0 or object_filters["min_features"] < 0:
        errors.append("object filters must be non-negative")

    if errors:
        raise ValueError("Filter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_filters()

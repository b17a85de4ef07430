"""
Chart rendering for result tables (plotly HTML).
"""

import os
import logging
from typing import List, Sequence, Union

import pandas as pd
import plotly.graph_objects as go

from ..processing.results import CHANGE, ResultTable

logger = logging.getLogger(__name__)

LINE = "line"
COLUMN = "column"


def _as_frame(table: Union[ResultTable, pd.DataFrame]) -> pd.DataFrame:
    if isinstance(table, ResultTable):
        return table.pivot()
    return table


def build_chart(table: Union[ResultTable, pd.DataFrame], x: str, y_fields: Sequence[str],
                kind: str = LINE, title: str = None) -> go.Figure:
    """Line or column figure of `y_fields` against `x`; missing values leave gaps."""
    df = _as_frame(table)
    missing = [c for c in [x, *y_fields] if c not in df.columns]
    if missing:
        raise KeyError(f"Chart columns {missing} not in table; available: {list(df.columns)}")

    fig = go.Figure()
    for field in y_fields:
        if kind == LINE:
            fig.add_trace(go.Scatter(x=df[x], y=df[field], mode="lines+markers", name=field))
        elif kind == COLUMN:
            fig.add_trace(go.Bar(x=df[x], y=df[field], name=field))
        else:
            raise ValueError(f"Unknown chart kind '{kind}'; expected '{LINE}' or '{COLUMN}'")

    fig.update_layout(
        title=title,
        xaxis_title=x,
        yaxis_title="km²" if any(f.endswith("km2") or f.startswith("urban_") for f in y_fields) else None,
        barmode="group",
        hovermode="x unified",
    )
    return fig


def render_chart(table: Union[ResultTable, pd.DataFrame], x: str, y_fields: Sequence[str],
                 kind: str, path: str, title: str = None) -> str:
    """Write a chart to a standalone HTML file and return its path."""
    fig = build_chart(table, x, y_fields, kind, title)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    fig.write_html(path)
    logger.info(f"Chart '{title or path}' written to {path}")
    return str(path)


def change_frame(table: ResultTable, configuration: str = None) -> pd.DataFrame:
    """Change records of one configuration with a 'period' label column."""
    df = table.to_dataframe(CHANGE)
    if configuration is not None:
        df = df[df["configuration"] == configuration]
    df = df.copy()
    df["period"] = df["baseline_year"].astype("Int64").astype(str) + "-" + df["year"].astype(str)
    return df


def render_presets(table: ResultTable, output_directory: str) -> List[str]:
    """Charts of the standard analyses, for whichever data the table holds."""
    written = []
    wide = table.pivot()
    columns = set(wide.columns)

    if {"urban_original", "urban_ebbi"} <= columns:
        written.append(render_chart(
            wide, "year", ["urban_original", "urban_ebbi"], LINE,
            os.path.join(output_directory, "urban_area_ndbi_vs_ebbi.html"),
            "Urban area (km²): NDBI vs EBBI",
        ))

    thresholds = [c for c in ("urban_original", "urban_lenient", "urban_strict") if c in columns]
    if len(thresholds) > 1:
        written.append(render_chart(
            wide, "year", thresholds, LINE,
            os.path.join(output_directory, "threshold_comparison.html"),
            "Urban area (km²) by threshold configuration",
        ))

    if not wide.empty:
        written.append(render_chart(
            wide, "year", ["image_count"], COLUMN,
            os.path.join(output_directory, "images_per_year.html"),
            "Images per year",
        ))

    for configuration in table.configurations:
        changes = change_frame(table, configuration)
        if changes.empty:
            continue
        written.append(render_chart(
            changes, "period", ["loss_km2", "gain_km2", "stable_km2"], COLUMN,
            os.path.join(output_directory, f"change_areas_{configuration}.html"),
            f"Built-up change (km²), {configuration}",
        ))
    return written

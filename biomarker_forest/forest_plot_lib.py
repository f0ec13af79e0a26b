"""
Forest Plot Rendering (plotly)

Composes the text columns of a nested table and the forest panel of a
ForestGeometry into one figure: row labels, one subplot per data column,
then the forest panel with point markers, whiskers, clip arrows, the
reference line and its two-sided header.

The renderer only draws: all positions come from the geometry, all text
from the table cells. The input table is never modified.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import plotly.graph_objects as go
from plotly.subplots import make_subplots

from biomarker_forest.errors import ConfigurationError
from biomarker_forest.layout import ForestConfig, ForestGeometry, compute_forest_geometry
from biomarker_forest.table import TableLike
from config import CONFIG
from logger import get_logger

logger = get_logger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True)
class ForestLayout:
    """Composed, not-yet-displayed forest plot."""

    figure: go.Figure
    geometry: ForestGeometry
    header: tuple[str, ...]
    row_labels: tuple[str, ...]
    cell_text: tuple[tuple[str, ...], ...]


def _html(text: str) -> str:
    return str(text).replace("\n", "<br>")


class ForestPlot:
    """
    Forest plot figure builder for a table and its computed geometry.
    """

    def __init__(self, table: TableLike, geometry: ForestGeometry):
        if geometry.n_table_rows != len(table.rows):
            raise ConfigurationError(
                f"Geometry was computed for {geometry.n_table_rows} rows, table has {len(table.rows)}"
            )
        if len(geometry.column_widths.columns) != len(table.columns):
            raise ConfigurationError("Geometry column widths do not match the table columns")
        self.table = table
        self.geometry = geometry
        self.colors = CONFIG.get_section("forest").get("colors", {})
        self.font_size = CONFIG.get("forest.font_size", 12)

    def _row_y(self) -> list[float]:
        return [-float(i) for i in range(len(self.table.rows))]

    def _header_levels(self) -> int:
        return 2 if any(label for label, _ in self.table.header_spans()) else 1

    def _add_text_columns(self, fig: go.Figure) -> None:
        table = self.table
        y = self._row_y()
        text_color = self.colors.get("text", "#1F2328")
        header_color = self.colors.get("header", "#0F2440")

        labels = []
        for row in table.rows:
            label = "\u00a0" * (2 * row.indent) + _html(row.label)
            labels.append(f"<b>{label}</b>" if row.kind == "header" else label)

        fig.add_trace(go.Scatter(
            x=[0] * len(y), y=y, text=labels, name="row_labels",
            mode="text", textposition="middle right",
            textfont=dict(size=self.font_size, color=text_color),
            hoverinfo="none", showlegend=False,
        ), row=1, col=1)
        fig.add_trace(go.Scatter(
            x=[0], y=[1], text=[f"<b>{_html(getattr(table, 'row_label_header', ''))}</b>"],
            name="header:row_labels", mode="text", textposition="middle right",
            textfont=dict(size=self.font_size, color=header_color),
            hoverinfo="none", showlegend=False,
        ), row=1, col=1)

        for j, col in enumerate(table.columns):
            texts = [table.cell(i, j).text for i in range(len(table.rows))]
            fig.add_trace(go.Scatter(
                x=[0.5] * len(y), y=y, text=texts, name=f"col:{col.id}",
                mode="text", textposition="middle center",
                textfont=dict(size=self.font_size, color=text_color),
                hoverinfo="none", showlegend=False,
            ), row=1, col=j + 2)
            fig.add_trace(go.Scatter(
                x=[0.5], y=[1], text=[f"<b>{_html(col.label)}</b>"], name=f"header:{col.id}",
                mode="text", textposition="middle center",
                textfont=dict(size=self.font_size, color=header_color),
                hoverinfo="none", showlegend=False,
            ), row=1, col=j + 2)

        # Spanning labels sit above their first column, centered over the span
        pos = 0
        for label, n in table.header_spans():
            if label:
                fig.add_annotation(
                    x=0.5 * n, y=2, xref=f"x{pos + 2}", yref="y",
                    text=f"<b>{_html(label)}</b>", showarrow=False,
                    font=dict(size=self.font_size, color=header_color),
                    xanchor="center",
                )
            pos += n

    def _add_forest_panel(self, fig: go.Figure, plot_col: int) -> None:
        geo = self.geometry
        d0, d1 = geo.domain
        y_of = {i: -float(i) for i in range(len(self.table.rows))}

        xs, ys, hover = [], [], []
        wx, wy = [], []
        clip_left: list[tuple[float, float]] = []
        clip_right: list[tuple[float, float]] = []
        for r in geo.rows:
            if not r.has_point:
                continue
            yy = y_of[r.row_index]
            if r.point_in_domain:
                xs.append(r.point_x)
                ys.append(yy)
                hover.append(f"{r.label}: {r.estimate:.3f} ({r.lower:.3f}, {r.upper:.3f})")
            if r.interval_x_lo is not None and r.interval_x_hi is not None:
                wx.extend([r.interval_x_lo, r.interval_x_hi, None])
                wy.extend([yy, yy, None])
            for clipped, x in ((r.clipped_lo, r.interval_x_lo), (r.clipped_hi, r.interval_x_hi)):
                if clipped and x is not None:
                    (clip_left if x <= d0 else clip_right).append((x, yy))

        fig.add_trace(go.Scatter(
            x=wx, y=wy, mode="lines", name="whiskers",
            line=dict(color=self.colors.get("whisker", "#6B7280"), width=1.5),
            hoverinfo="none", showlegend=False,
        ), row=1, col=plot_col)
        fig.add_trace(go.Scatter(
            x=xs, y=ys, mode="markers", name="points", text=hover,
            marker=dict(
                size=CONFIG.get("forest.marker_size", 9), symbol="square",
                color=self.colors.get("point", "#1E3A5F"),
            ),
            hovertemplate="%{text}<extra></extra>", showlegend=False,
        ), row=1, col=plot_col)
        for name, symbol, points in (
            ("clip_lo", "triangle-left", clip_left),
            ("clip_hi", "triangle-right", clip_right),
        ):
            fig.add_trace(go.Scatter(
                x=[p[0] for p in points], y=[p[1] for p in points],
                mode="markers", name=name,
                marker=dict(size=9, symbol=symbol, color=self.colors.get("clip_marker", "#E74856")),
                hoverinfo="none", showlegend=False,
            ), row=1, col=plot_col)

        n = len(self.table.rows)
        if geo.vline_x is not None:
            fig.add_shape(
                type="line", x0=geo.vline_x, x1=geo.vline_x, y0=-(n - 0.5), y1=0.5,
                line=dict(color=self.colors.get("vline", "#1F2328"), width=1, dash="dash"),
                row=1, col=plot_col,
            )
        if geo.forest_header is not None and geo.vline_x is not None:
            left, right = geo.forest_header
            fig.add_trace(go.Scatter(
                x=[(d0 + geo.vline_x) / 2, (geo.vline_x + d1) / 2], y=[1, 1],
                text=[f"<b>{_html(left)}</b>", f"<b>{_html(right)}</b>"],
                mode="text", textposition="middle center", name="forest_header",
                textfont=dict(size=self.font_size, color=self.colors.get("header", "#0F2440")),
                hoverinfo="none", showlegend=False,
            ), row=1, col=plot_col)

        fig.update_xaxes(
            range=[d0, d1],
            tickvals=geo.tick_positions,
            ticktext=[t.label for t in geo.ticks],
            showgrid=False, zeroline=False, showline=True, linecolor="#9CA3AF",
            row=1, col=plot_col,
        )

    def create(self, title: str | None = None) -> go.Figure:
        """Build the composed figure."""
        widths = self.geometry.column_widths
        n_panels = len(widths.as_list())
        plot_col = n_panels

        fig = make_subplots(
            rows=1, cols=n_panels,
            shared_yaxes=True,
            horizontal_spacing=0.0,
            column_widths=[w / widths.total for w in widths.as_list()],
        )

        self._add_text_columns(fig)
        self._add_forest_panel(fig, plot_col)

        n = len(self.table.rows)
        levels = self._header_levels()
        for c in range(1, plot_col):
            fig.update_xaxes(visible=False, range=[0, 1], row=1, col=c)
        fig.update_yaxes(visible=False, range=[-(n - 0.5), levels + 0.5])

        row_height = CONFIG.get("forest.row_height", 28)
        char_width = CONFIG.get("forest.char_width", 7)
        fig.update_layout(
            title=dict(text=f"<b>{title}</b>", x=0.01, xanchor="left") if title else None,
            height=int((n + levels) * row_height + 120),
            width=int(widths.total * char_width + 40),
            template="plotly_white",
            margin=dict(l=10, r=20, t=80 if title else 30, b=40),
            plot_bgcolor="white",
            showlegend=False,
        )
        return fig


def _materialize(fig: go.Figure, figure: go.Figure | None, newpage: bool) -> go.Figure:
    """
    Put the composed figure on the display surface and show it. Without a
    surface the composed figure itself is shown; with one, it is cleared
    first when `newpage` is set, otherwise the plot is added on top.
    """
    target = fig
    if figure is not None:
        target = figure
        if newpage:
            target.data = []
            target.layout = go.Layout()
        target.add_traces([trace.to_plotly_json() for trace in fig.data])
        target.update_layout(fig.layout.to_plotly_json())

    renderer = CONFIG.get("forest.renderer")
    if renderer:
        target.show(renderer=renderer)
    else:
        target.show()
    return target


def g_forest(
    tbl: TableLike,
    col_x: int | None = None,
    col_ci: int | None = None,
    vline: float | None = _UNSET,
    forest_header: Sequence[str] | None = _UNSET,
    xlim: tuple[float, float] | None = None,
    logx: bool | None = None,
    x_at: Sequence[float] | None = None,
    width_row_names: float | None = None,
    width_columns: Sequence[float] | None = None,
    width_forest: float | None = None,
    title: str | None = None,
    draw: bool = True,
    newpage: bool = True,
    figure: go.Figure | None = None,
) -> ForestLayout:
    """
    Forest plot of a nested table.

    col_x / col_ci index the point-estimate and interval columns; vline,
    forest_header and logx default to the settings an EffectTable carries.
    An explicit forest_header needs a vline; the table's default header is
    dropped when vline is explicitly None.

    With draw=False nothing is displayed and the ForestLayout is returned
    for further composition or inspection. With draw=True the figure is
    shown (onto `figure` when given, cleared first if newpage).
    """
    table_vline = getattr(tbl, "vline", None)
    if vline is _UNSET:
        vline = table_vline
    if forest_header is _UNSET:
        forest_header = getattr(tbl, "forest_header", None) if vline is not None else None
    if logx is None:
        logx = bool(getattr(tbl, "logx", False))

    config = ForestConfig.from_config(
        xlim=tuple(xlim) if xlim is not None else None,
        logx=logx,
        x_at=tuple(x_at) if x_at is not None else None,
        vline=vline,
        forest_header=tuple(forest_header) if forest_header is not None else None,
        width_row_names=width_row_names,
        width_columns=tuple(width_columns) if width_columns is not None else None,
        width_forest=width_forest,
    )
    geometry = compute_forest_geometry(tbl, col_x=col_x, col_ci=col_ci, config=config)
    fig = ForestPlot(tbl, geometry).create(title=title)

    layout = ForestLayout(
        figure=fig,
        geometry=geometry,
        header=tuple(col.label for col in tbl.columns),
        row_labels=tuple(row.label for row in tbl.rows),
        cell_text=tuple(tuple(c.text for c in row.cells) for row in tbl.rows),
    )

    if draw:
        shown = _materialize(fig, figure, newpage)
        logger.log_operation("g_forest", "completed", rows=len(tbl.rows), drawn=True)
        return ForestLayout(shown, geometry, layout.header, layout.row_labels, layout.cell_text)

    logger.log_operation("g_forest", "completed", rows=len(tbl.rows), drawn=False)
    return layout

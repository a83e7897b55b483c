from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .config import RunConfiguration

LOGGER = logging.getLogger("overhead.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["xtick.labelsize"] = 10
plt.rcParams["ytick.labelsize"] = 10
plt.rcParams["legend.fontsize"] = 9
plt.rcParams["figure.titlesize"] = 14

BASELINE_COLOR = "#6A994E"  # Green
AGENT_COLORS = ["#2E86AB", "#A23B72", "#F18F01", "#C73E1D", "#3B1F2B", "#44BBA4"]

# (column, panel title, axis label)
PANELS = [
    ("startup_duration_ms", "Startup Time", "Milliseconds"),
    ("request_avg_ms", "Average Request Latency", "Milliseconds"),
    ("request_p95_ms", "p95 Request Latency", "Milliseconds"),
    ("request_rate", "Throughput", "Requests / second"),
]

CHART_FILENAME = "overhead.png"


def render_overhead_charts(
    config: RunConfiguration,
    frame: pd.DataFrame,
    output_dir: Path,
) -> list[Path]:
    """Render a per-agent comparison of the headline metrics.

    Bars show the mean over passes, whiskers the standard deviation and dots
    the individual passes.
    """
    if frame.empty:
        LOGGER.warning("No records available for %s, skipping charts", config.name)
        return []

    agent_order = [name for name in config.agent_names() if name in set(frame["agent"])]
    palette = _palette(config, agent_order)
    panels = [panel for panel in PANELS if frame[panel[0]].notna().any()]
    if not panels:
        LOGGER.warning("No numeric metrics available for %s, skipping charts", config.name)
        return []

    columns = 2 if len(panels) > 1 else 1
    rows = int(np.ceil(len(panels) / columns))
    fig, axes = plt.subplots(rows, columns, figsize=(7 * columns, 4.5 * rows), squeeze=False)

    for ax, (column, title, label) in zip(axes.flat, panels):
        data = frame[["agent", column]].copy()
        data[column] = pd.to_numeric(data[column], errors="coerce")
        data = data.dropna()
        _render_metric_panel(ax, data, column, title, label, agent_order, palette)

    for ax in list(axes.flat)[len(panels):]:
        ax.set_visible(False)

    fig.suptitle(f"Agent Overhead: {config.name}", fontweight="bold")
    plt.tight_layout()
    chart_path = output_dir / CHART_FILENAME
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return [chart_path]


def _render_metric_panel(
    ax: plt.Axes,
    data: pd.DataFrame,
    column: str,
    title: str,
    label: str,
    agent_order: list[str],
    palette: dict[str, str],
) -> None:
    order = [agent for agent in agent_order if agent in set(data["agent"])]
    if not order:
        ax.set_visible(False)
        return

    means = data.groupby("agent")[column].mean().reindex(order)
    stds = data.groupby("agent")[column].std(ddof=0).reindex(order).fillna(0.0)
    positions = np.arange(len(order))

    bars = ax.bar(
        positions,
        means.values,
        yerr=stds.values,
        color=[palette[agent] for agent in order],
        alpha=0.8,
        edgecolor="white",
        linewidth=2,
        capsize=4,
    )
    for index, agent in enumerate(order):
        values = data.loc[data["agent"] == agent, column].values
        ax.scatter(
            np.full(len(values), positions[index]),
            values,
            color="#333333",
            s=14,
            zorder=3,
        )

    for bar in bars:
        height = bar.get_height()
        ax.text(
            bar.get_x() + bar.get_width() / 2.0,
            height,
            f"{height:.1f}",
            ha="center",
            va="bottom",
            fontweight="bold",
            fontsize=9,
        )

    ax.set_xticks(positions)
    ax.set_xticklabels(order, rotation=15, ha="right")
    ax.set_ylabel(label, fontweight="bold")
    ax.set_title(title, fontweight="bold", pad=10)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)


def _palette(config: RunConfiguration, agent_order: list[str]) -> dict[str, str]:
    palette = {}
    colors = iter(AGENT_COLORS * (len(agent_order) // len(AGENT_COLORS) + 1))
    baseline = {agent.name for agent in config.agents if not agent.instrumented}
    for agent in agent_order:
        palette[agent] = BASELINE_COLOR if agent in baseline else next(colors)
    return palette


__all__ = ["render_overhead_charts"]

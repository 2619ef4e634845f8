"""
Visualization utilities for the Patterson heavy-atom search.

Plotly figures for inspecting Patterson map sections and the peaks
found on them.

Author: Patterson Heavy-Atom Search Project
"""

import numpy as np
import plotly.graph_objects as go
from typing import List, Optional

from patterson.maps.peaks import Peak


COLORS = {
    'peak': '#d62728',       # Red for peak markers
    'harker': '#2ca02c',     # Green for Harker section outline
}

AXIS_NAMES = ('u', 'v', 'w')


def map_section(field: np.ndarray, axis: str, index: int) -> np.ndarray:
    """
    2D section of a Patterson map at a fixed grid index.

    Parameters
    ----------
    field : np.ndarray
        Map of shape (res, res, res) indexed [iw, iv, iu].
    axis : str
        Fixed axis, 'u', 'v' or 'w'.
    index : int
        Grid index along the fixed axis.

    Returns
    -------
    np.ndarray
        Section with rows along the slower of the two free axes.
    """
    if axis == 'w':
        return field[index, :, :]
    if axis == 'v':
        return field[:, index, :]
    if axis == 'u':
        return field[:, :, index]
    raise ValueError(f"Unknown axis: {axis}")


def create_section_heatmap(field: np.ndarray, axis: str, index: int,
                           peaks: Optional[List[Peak]] = None,
                           title: Optional[str] = None) -> go.Figure:
    """
    Heatmap of one Patterson section with nearby peaks overlaid.

    Parameters
    ----------
    field : np.ndarray
        Map of shape (res, res, res).
    axis : str
        Fixed axis.
    index : int
        Grid index along the fixed axis.
    peaks : list of Peak, optional
        Peaks to mark; only those lying on this section are drawn.
    title : str, optional
        Figure title.

    Returns
    -------
    go.Figure
        Plotly figure object.
    """
    res = field.shape[0]
    section = map_section(field, axis, index)
    free = [a for a in AXIS_NAMES if a != axis]
    coords = np.arange(res) / res

    fig = go.Figure()
    fig.add_trace(go.Heatmap(
        z=section,
        x=coords,
        y=coords,
        colorscale='Viridis',
        colorbar=dict(title='P'),
        hovertemplate=f'{free[0]}: %{{x:.3f}}<br>{free[1]}: %{{y:.3f}}<br>P: %{{z:.4f}}<extra></extra>'
    ))

    if peaks:
        on_section = [p for p in peaks
                      if int(round(p.coordinate(axis) * res)) == index]
        if on_section:
            fig.add_trace(go.Scatter(
                x=[p.coordinate(free[0]) for p in on_section],
                y=[p.coordinate(free[1]) for p in on_section],
                mode='markers',
                marker=dict(size=10, color=COLORS['peak'], symbol='x'),
                name=f'Peaks ({len(on_section)})',
                text=[f"h={p.height:.3f}" for p in on_section],
                hovertemplate='%{text}<extra></extra>'
            ))

    fig.update_layout(
        title=title or f"Patterson section {axis} = {index / res:.3f}",
        xaxis_title=free[0],
        yaxis_title=free[1],
        yaxis=dict(scaleanchor='x'),
        height=550,
    )
    return fig

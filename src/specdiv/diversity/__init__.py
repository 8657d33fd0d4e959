"""Diversity modules.

- indices: Shannon / Simpson / Fisher, Bray-Curtis, PCoA
- functional: FRic / FEve / FDiv in the reduced trait space
- window_aggregator: Diversity maps on the window grid
- plot_extractor: Diversity of field plots
"""

from specdiv.diversity.window_aggregator import WindowAggregator, DiversityResult
from specdiv.diversity.plot_extractor import PlotExtractor, Plot, PlotDiversity, rasterize_plots

__all__ = [
    "WindowAggregator",
    "DiversityResult",
    "PlotExtractor",
    "Plot",
    "PlotDiversity",
    "rasterize_plots",
]

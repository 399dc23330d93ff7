import numpy as np
import pandas as pd
import matplotlib as mpl
mpl.use('Agg')
import matplotlib.pyplot as plt

from magiccall.calling import CallResult
from magiccall.log import logger


class Visualizer:
    def __init__(self):
        pass

    def plot_calls(
            self,
            raw_data: pd.DataFrame,
            result: CallResult,
            cmap=None,
            point_size: float = 12,
            title: str = None,
            ax=None):
        """
        Plot marker data coloured by consensus call, with each group's contour.

        :param raw_data: Raw measurements indexed by line (one or two columns).
        :param result: Result of calling the marker.
        :param cmap: Colormap for the combined groups.
        :param point_size: Marker size for the scatter plot.
        :param title: Optional plot title.
        :param ax: Matplotlib Axes object for plotting.
        """
        logger.info("Plotting marker calls...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")

        cmap = mpl.colormaps.get_cmap(cmap or "tab10")
        data = raw_data.reindex(result.overall_assignment.index)
        assignment = result.overall_assignment
        unassigned = assignment.isna().to_numpy()
        x = data.iloc[:, 0].to_numpy()

        if data.shape[1] == 1:
            # one-dimensional marker: strip plot with contour bounds
            jitter = np.random.default_rng(0).uniform(-0.3, 0.3, len(x))
            y = assignment.fillna(0).to_numpy(dtype=float) + jitter
            ax.scatter(x[unassigned], y[unassigned], s=point_size, color="lightgrey", label="no call")
            for group in range(1, result.n_groups + 1):
                members = assignment.eq(group).fillna(False).to_numpy(dtype=bool)
                color = cmap(group % cmap.N)
                ax.scatter(x[members], y[members], s=point_size, color=color, label=f"group {group}")
                fitted = result.distributions.get(group)
                if fitted is not None:
                    for bound in fitted.contour[:, 0]:
                        ax.axvline(bound, color=color, linestyle="--", linewidth=0.8)
            ax.set_xlabel(data.columns[0])
            ax.set_ylabel("Consensus group")
        else:
            y = data.iloc[:, 1].to_numpy()
            ax.scatter(x[unassigned], y[unassigned], s=point_size, color="lightgrey", label="no call")
            for group in range(1, result.n_groups + 1):
                members = assignment.eq(group).fillna(False).to_numpy(dtype=bool)
                color = cmap(group % cmap.N)
                ax.scatter(x[members], y[members], s=point_size, color=color, label=f"group {group}")
                fitted = result.distributions.get(group)
                if fitted is not None:
                    contour = fitted.contour
                    ax.plot(contour[:, 0], contour[:, 1], color=color, linewidth=1)
            ax.set_xlabel(data.columns[0])
            ax.set_ylabel(data.columns[1])

        ax.legend(frameon=False, fontsize=8)
        if title:
            ax.set_title(title)
        ax.spines['top'].set_visible(False)
        ax.spines['right'].set_visible(False)

    def save(self, fig, out_path: str, dpi: int = 300):
        fig.savefig(out_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Plot saved to {out_path}")

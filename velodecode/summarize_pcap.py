# %%
import logging
from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np
from fire import Fire
from pytars.readers.pcap.pcap_filters import PcapPacketFilters
from scipy.stats import binned_statistic_2d

from .read_pcap_pointcloud import read_pcap_points


def summarize_pcap(
    pcap_file: Union[Path, str],
    sensor_model: str = "HDL-32E",
    calibration_file: Optional[str] = None,
    source_ip_addr: Optional[str] = None,
    min_relative_time: float = 0.0,
    max_relative_time: float = np.inf,
    save_plot: bool = True,
    log_level: str = "INFO",
):
    """Summarize the lidar data packets in a pcap file.
    Args:
        pcap_file: path to pcap file
        sensor_model: sensor model name, e.g. VLP-16, HDL-32E or HDL-64E
        calibration_file: optional csv, xml or yaml calibration
        source_ip_addr: source ip address to filter
        min_relative_time: minimum relative time to filter
        max_relative_time: maximum relative time to filter
        save_plot: save a spherical summary image next to the pcap
        log_level: logging level name
    """
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO))

    pcap_path = Path(pcap_file)
    pcap_filters = PcapPacketFilters(
        source_ip_addr=source_ip_addr,
        relative_time_gate_seconds=(min_relative_time, max_relative_time),
    )
    points = read_pcap_points(
        pcap_path,
        sensor_model=sensor_model,
        pcap_filters=pcap_filters,
        calibration_file=calibration_file,
    )

    summary = summarize_points(points)
    for key, value in summary.items():
        logging.info(f"{key:<24}: {value}")

    if save_plot:
        fig = plot_pointcloud_spherical(points, name=pcap_path.stem)
        fig.savefig(str(pcap_path.with_suffix("")) + "_summary_spherical.png", dpi=300)
        plt.close(fig)
    return summary


def summarize_points(points: np.ndarray) -> dict:
    duration_s = (points["timestamp"].max() - points["timestamp"].min()) * 1e-6
    channels, counts = np.unique(points["channel"], return_counts=True)
    return {
        "num_points": int(len(points)),
        "duration_seconds": round(float(duration_s), 6),
        "num_channels": int(len(channels)),
        "min_points_per_channel": int(counts.min()),
        "max_points_per_channel": int(counts.max()),
        "median_range_meters": round(float(np.median(points["distance"])), 3),
    }


def calc_elevation_deg(points: np.ndarray) -> np.ndarray:
    horizontal = np.hypot(points["x"], points["y"])
    return np.degrees(np.arctan2(points["z"], horizontal))


def plot_pointcloud_spherical(points: np.ndarray, name: str = ""):
    elevation_deg = calc_elevation_deg(points)
    azimuth_vector_degrees = np.arange(0, 360.5, 0.5)
    elevation_vector_degrees = np.arange(
        np.floor(elevation_deg.min()) - 1, np.ceil(elevation_deg.max()) + 1.5, 1.0
    )

    # calculate median range and reflectivity for each bin
    statistics = [
        binned_statistic_2d(
            points["azimuth"],
            elevation_deg,
            values,
            statistic="median",
            bins=[azimuth_vector_degrees, elevation_vector_degrees],
        ).statistic
        for values in (points["distance"], points["intensity"].astype(float))
    ]

    fig, axs = plt.subplots(2, 1, figsize=(10, 6), sharex=True)
    plot_titles = ["Median Range % 10 (m)", "Median Intensity"]
    plot_data = [statistics[0] % 10, statistics[1]]
    cmap_list = ["viridis_r", "jet"]
    vrange_list = [[0, 10], [0, 100]]
    for ax, data, title, vrange, cmap in zip(axs, plot_data, plot_titles, vrange_list, cmap_list):
        im = ax.pcolormesh(
            azimuth_vector_degrees,
            elevation_vector_degrees,
            data.T,
            vmin=vrange[0],
            vmax=vrange[1],
            cmap=cmap,
        )
        ax.set_xlim([0, 360])
        ax.set_xlabel("Azimuth (deg)")
        ax.set_ylabel("Elevation (deg)")
        ax.set_title(title)
        ax.label_outer()
        fig.colorbar(im, ax=ax, aspect=5)

    plt.suptitle(name)
    plt.tight_layout()
    return fig


def main():
    Fire(summarize_pcap)


if __name__ == "__main__":
    main()

# %%
import logging

import numpy as np

MICROSECONDS_PER_HOUR = 3_600_000_000


def resolve_top_of_hour(timestamp_us, reference_datetime) -> np.ndarray:
    """Convert microseconds past the hour into absolute datetime64[us].

    The packets carry no hour, so the hour is taken from a reference time (gps
    or capture time). The previous, current and next hour of the reference are
    tried and the estimate closest to the reference wins, which handles data
    captured across an hour change.
    """
    timestamp_us = np.asarray(timestamp_us, dtype=np.float64)
    reference = np.datetime64(reference_datetime, "us")
    if np.isnat(reference):
        raise ValueError("reference_datetime must be a valid datetime")
    if np.any(timestamp_us < 0) or np.any(timestamp_us >= 2 * MICROSECONDS_PER_HOUR):
        logging.warning("Timestamps outside the expected microseconds-past-hour range")

    offset = np.round(timestamp_us).astype(np.int64).astype("timedelta64[us]")
    reference_hour = reference.astype("datetime64[h]")
    all_estimates = np.stack(
        [(reference_hour + i).astype("datetime64[us]") + offset for i in (-1, 0, 1)]
    )
    all_estimate_diff = np.abs(all_estimates - reference)

    # use the closest estimate
    ind = np.argmin(all_estimate_diff, axis=0)
    return np.take_along_axis(all_estimates, ind[None, ...], axis=0)[0]

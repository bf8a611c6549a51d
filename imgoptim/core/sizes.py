from __future__ import annotations

_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(num_bytes: int, decimals: int = 2) -> str:
    """Human-readable byte count using 1024 steps, e.g. ``1.50 MB``.

    Negative values keep their sign so a file that grew is still shown honestly.
    """
    sign = "-" if num_bytes < 0 else ""
    value = float(abs(num_bytes))
    unit = _UNITS[0]
    for unit in _UNITS:
        if value < 1024 or unit == _UNITS[-1]:
            break
        value /= 1024
    if unit == "B":
        return f"{sign}{int(value)} B"
    return f"{sign}{value:.{decimals}f} {unit}"

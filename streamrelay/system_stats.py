"""
Stream Relay - Host resource snapshot for the health endpoint
"""
import os

import psutil

MB = 1024 * 1024


def get_system_stats() -> dict:
    """CPU, memory and load figures for the relay host."""
    memory = psutil.virtual_memory()
    used = memory.total - memory.available
    try:
        load_avg = list(os.getloadavg())
    except (AttributeError, OSError):
        load_avg = [0.0, 0.0, 0.0]

    return {
        # interval=None compares against the previous call and never blocks
        "cpuUsage": round(psutil.cpu_percent(interval=None)),
        "cpuCount": psutil.cpu_count() or 0,
        "memoryUsage": round(used / memory.total * 100) if memory.total else 0,
        "memoryTotal": round(memory.total / MB),
        "memoryUsed": round(used / MB),
        "memoryFree": round(memory.available / MB),
        "loadAvg": load_avg,
    }

import json, sys, threading, time
import numpy as np

_write_lock = threading.Lock()

def _plain(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)

def log(event: str, **fields):
    """One JSON line per event on stdout; safe to call from worker threads."""
    rec = {"ts": time.time(), "event": event, "thread": threading.current_thread().name}
    rec.update(fields)
    line = json.dumps(rec, default=_plain) + "\n"
    with _write_lock:
        sys.stdout.write(line)
        sys.stdout.flush()

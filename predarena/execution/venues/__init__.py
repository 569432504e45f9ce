"""One executor per trading venue."""

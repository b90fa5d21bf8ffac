"""edgeprobe: find and rank edge-network IPs by latency and download speed."""

__version__ = "0.1.0"

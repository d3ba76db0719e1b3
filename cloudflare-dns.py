#!/usr/bin/env python3

"""Run the controller from a source checkout.

Puts `src/` on the import path so `./cloudflare-dns.py` works without
`pip install`; installed copies use the `kube-cloudflare-dns` script.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from cloudflare_dns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()

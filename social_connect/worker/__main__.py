from __future__ import annotations

import logging

from social_connect.core.middleware import quiet_http_client_logs
from social_connect.worker.runner import WorkerConfig, run_worker_forever


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    quiet_http_client_logs()
    run_worker_forever(config=WorkerConfig())


if __name__ == "__main__":
    main()

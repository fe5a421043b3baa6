#!/usr/bin/env python3

import argparse
import logging
import signal
import sys
import time

from clbnet.config.controllerConfig import load_controller_config
from clbnet.controller.manager import ControllerManager

manager = None


def signal_handler(signum, frame):
    """信号处理器"""
    logging.getLogger(__name__).info(f"Received signal {signum}, shutting down CLB port mapping controller...")
    if manager:
        manager.stop()
    sys.exit(0)


def main(argv=None):
    global manager

    parser = argparse.ArgumentParser(description="CLB 端口映射控制器")
    parser.add_argument("--config", required=True, help="控制器配置文件路径 (yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="输出 DEBUG 日志")
    args = parser.parse_args(argv)

    config = load_controller_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, str(config.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logger = logging.getLogger(__name__)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        manager = ControllerManager(config)
        manager.start()
        logger.info("CLB port mapping controller is running. Press Ctrl+C to stop.")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    finally:
        if manager:
            manager.stop()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Face Heartbeat – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --source SRC         Camera index or video file (default: 0)
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Target frame rate  (default: 30)
    --sampling FLOAT     Results per second (default: 1)
    --rescan FLOAT       Seconds between face rescans (default: 1)
    --window FLOAT       Analysis window in seconds (default: 10)
    --face-model PATH    Face cascade model (default: OpenCV's bundled one)
    --eye-model PATH     Eye cascade model (default: OpenCV's bundled one)
    --log PATH           Write result and frame logs to PATH_bpm.csv / PATH_frames.csv
    --server HOST        Forward results to a TCP result server
    --port INT           Result server port (default: 8080)
    --no-flip            Disable horizontal mirror
    --headless           Run without display window (log BPM to stdout)

Keyboard shortcuts (when a window is open)
------------------------------------------
    q / ESC  – quit
    r        – reset tracking and signal history
    s        – save a single annotated frame as PNG
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Union

# Must be set before cv2 is imported so Qt5 uses X11/XWayland instead of
# looking for a Wayland plugin that is not bundled with pip-installed opencv.
import os
os.environ.setdefault("QT_QPA_PLATFORM", "xcb")

import cv2

from face_heartbeat.camera import Camera
from face_heartbeat.config import ConfigurationError, SessionConfig
from face_heartbeat.network import SERVER_PORT, NetworkClient
from face_heartbeat.session import HeartRateSession
from face_heartbeat.types import Result

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("face_heartbeat")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Heart-rate monitor from a video of the face (rPPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", default="0",
                        help="Camera index or path of a video file")
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--sampling", type=float, default=1.0,
                        help="Heart-rate results per second")
    parser.add_argument("--rescan", type=float, default=1.0,
                        help="Seconds between face detection rescans")
    parser.add_argument("--window", type=float, default=10.0,
                        help="Analysis window in seconds")
    parser.add_argument("--face-model", default=None,
                        help="Face cascade XML (OpenCV bundled model if omitted)")
    parser.add_argument("--eye-model", default=None,
                        help="Eye cascade XML (OpenCV bundled model if omitted)")
    parser.add_argument("--log", default=None,
                        help="Base path of the result / frame log files")
    parser.add_argument("--server", default=None,
                        help="Host of a TCP result server to forward results to")
    parser.add_argument("--port", type=int, default=SERVER_PORT,
                        help="Port of the TCP result server")
    parser.add_argument("--no-flip", action="store_true",
                        help="Disable horizontal image flip")
    parser.add_argument("--headless", action="store_true",
                        help="No display window; log BPM to stdout only")
    return parser.parse_args(argv)


def _parse_source(value: str) -> Union[int, str]:
    return int(value) if value.isdigit() else value


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    camera = Camera(
        source=_parse_source(args.source),
        resolution=(res_w, res_h),
        fps=args.fps,
        flip_horizontal=not args.no_flip,
    )

    client: NetworkClient | None = None
    if args.server:
        client = NetworkClient(args.server, port=args.port)
        client.start()

    def on_result(result: Result) -> None:
        if args.headless:
            ts = time.strftime("%H:%M:%S")
            print(f"[{ts}] BPM={result.mean_bpm:.1f}  "
                  f"min={result.min_bpm:.1f}  max={result.max_bpm:.1f}")
        if client is not None and client.is_active:
            client.on_result(result)

    if not args.headless:
        cv2.namedWindow("Face Heartbeat", cv2.WINDOW_NORMAL)

    try:
        with camera:
            width, height = camera.frame_size
            config = SessionConfig(
                width=width,
                height=height,
                time_base=1e-6,
                sampling_frequency=args.sampling,
                rescan_interval=args.rescan,
                window_seconds=args.window,
                min_window_seconds=min(SessionConfig.min_window_seconds, args.window),
                face_classifier_path=args.face_model,
                eye_classifier_path=args.eye_model,
                log=args.log is not None,
                log_path=args.log,
                draw=not args.headless,
            )

            logger.info("Starting heart-rate monitor.  Press 'q' or ESC to quit.")
            with HeartRateSession(config, on_result) as session:
                for frame in camera.frames():
                    session.process(frame)

                    if args.headless:
                        continue
                    cv2.imshow("Face Heartbeat", frame.image)
                    key = cv2.waitKey(1) & 0xFF
                    if key in (ord("q"), 27):          # q or ESC
                        logger.info("Quit requested by user.")
                        break
                    elif key == ord("r"):
                        session.reset()
                        logger.info("Tracking and signal history reset.")
                    elif key == ord("s"):
                        fname = f"snapshot_{int(time.time())}.png"
                        cv2.imwrite(fname, frame.image)
                        logger.info("Saved snapshot: %s", fname)

    except KeyboardInterrupt:
        logger.info("Interrupted.")
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        if client is not None:
            client.stop()
        if not args.headless:
            cv2.destroyAllWindows()

    return 0


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())

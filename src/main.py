# src/main.py

import argparse
import logging
import math
import signal
import sys
import time
import numpy as np
from core.pipeline import FramePipeline, Undistorter
from core.video import VideoSource
from detection.arch import ArchDetector
from utils.config import ArchDetectorConfig
from utils.errors import ArchDetectorError
from utils.types import DetectionFrame, ProcessingMetrics

logger = logging.getLogger("ArchDetectionSystem")

class ArchDetectionSystem:
    """Main application that runs the arch detector over a video stream.

    This class ties the video source to the arch detector, runs the
    frame loop and reports the tracked arch and processing metrics for
    every frame.
    """

    def __init__(self, source, config: ArchDetectorConfig,
                 width: int = None, height: int = None, calibration: str = None):
        """Initialize all system components."""
        print("Initializing Arch Detection System...")

        preprocess = FramePipeline()
        if calibration:
            data = np.load(calibration)
            preprocess.add_stage(Undistorter(data["K"], data["dist"]))
            print(f"Undistorting frames with {calibration}")

        self.video = VideoSource(source, width, height)
        self.detector = ArchDetector(self.video.width, self.video.height, config,
                                     preprocess=preprocess)

        self.running = False
        self.frame_count = 0
        self.latest_metrics = None
        self.frame_times = []
        self.max_frame_history = 30

        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

    def start(self):
        """Run the processing loop until the stream ends."""
        print(f"Processing {self.video.source} at {self.video.width}x{self.video.height}")
        self.running = True
        self._main_loop()
        self.video.stop()
        print(f"Done. {self.frame_count} frames processed.")

    def _main_loop(self):
        while self.running:
            frame = self.video.get_frame()
            if frame is None:
                break

            self.frame_count += 1
            detection_frame = DetectionFrame(
                frame=frame,
                timestamp=time.time(),
                frame_id=self.frame_count,
                width=frame.shape[1],
                height=frame.shape[0]
            )

            result = self.detector.process_frame(detection_frame)
            if not result.is_valid:
                logger.warning(f"Frame {self.frame_count}: {result.error}")
                continue

            self.latest_metrics = self._update_metrics(result)
            estimate = result.data.estimate
            logger.info(f"Frame {self.frame_count}: angle {math.degrees(estimate.line_angle):.0f} deg, "
                        f"rho1 {estimate.rho1:.0f}px, rho2 {estimate.rho2:.0f}px, "
                        f"{self.latest_metrics.to_dict()}")

    def _update_metrics(self, result) -> ProcessingMetrics:
        frame_time = result.metadata['processing_time']
        self.frame_times.append(frame_time)
        if len(self.frame_times) > self.max_frame_history:
            self.frame_times.pop(0)
        avg_frame_time = sum(self.frame_times) / len(self.frame_times)

        return ProcessingMetrics(
            frame_time=frame_time * 1000,
            processing_fps=1.0 / avg_frame_time if avg_frame_time > 0 else 0.0,
            tracker_phase=result.metadata['tracker_phase'],
            num_markers=result.metadata['num_markers'],
            num_states=result.data.estimate.num_states,
            state_cost=result.data.estimate.state_cost,
            horizon_degrees=result.data.horizon.angle_degrees
        )

    def _handle_shutdown(self, signum, frame):
        print("\nInitiating system shutdown...")
        self.running = False


def parse_args(argv=None):
    defaults = ArchDetectorConfig()
    parser = argparse.ArgumentParser(description="Track the arch through a video stream")
    parser.add_argument("source", help="Video file path or camera index")
    parser.add_argument("--width", type=int, default=None, help="Resize frames to this width")
    parser.add_argument("--height", type=int, default=None, help="Resize frames to this height")
    parser.add_argument("--calibration", default=None,
                        help="npz file with camera matrix K and distortion coefficients dist")
    parser.add_argument("--theta-resolution", type=int, default=defaults.theta_resolution_degrees)
    parser.add_argument("--rho-resolution", type=int, default=defaults.rho_resolution)
    parser.add_argument("--angle-margin", type=int, default=defaults.angle_degrees_margin)
    parser.add_argument("--rho-distance-min", type=int, default=defaults.rho_distance_min)
    parser.add_argument("--rho-distance-max", type=int, default=defaults.rho_distance_max)
    parser.add_argument("--allow-line-outside-image", action="store_true")
    parser.add_argument("--no-normalize", action="store_true",
                        help="Keep raw accumulated costs instead of subtracting each frame's minimum")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log per-frame tracker details")
    return parser.parse_args(argv)


def config_from_args(args) -> ArchDetectorConfig:
    config = ArchDetectorConfig(
        theta_resolution_degrees=args.theta_resolution,
        rho_resolution=args.rho_resolution,
        angle_degrees_margin=args.angle_margin,
        rho_distance_min=args.rho_distance_min,
        rho_distance_max=args.rho_distance_max,
        allow_line_outside_image=args.allow_line_outside_image,
        normalize_accumulated_cost=not args.no_normalize
    )
    config.validate()
    return config


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    source = int(args.source) if args.source.isdigit() else args.source
    try:
        config = config_from_args(args)
        system = ArchDetectionSystem(source, config, args.width, args.height, args.calibration)
    except (ArchDetectorError, IOError) as e:
        print(f"Initialization failed: {e}")
        return 1

    system.start()
    return 0


if __name__ == "__main__":
    sys.exit(main())

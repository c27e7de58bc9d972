#!/usr/bin/env python3
"""
Threshold Calibration Tool - Sentinel Attendance
Samples liveness windows from the camera and prints the quality metrics,
motion score and spoof verdict for each, followed by percentile summaries.

Run once in front of the camera and once holding a phone/monitor showing a
face, then set anti_spoofing / motion_detection thresholds between the two.
"""

import argparse
import json
import os
import time

import numpy as np

from src.config.settings import VerificationSettings, load_config
from src.security.spoof_gate import SpoofGate
from src.vision.camera_capture import CameraFrameSource
from src.vision.frame_collector import capture_window
from src.vision.quality_analyzer import analyze
from src.utils.logger import setup_logger

logger = setup_logger(__name__)

METRIC_KEYS = ["sharpness", "contrast", "brightness", "colorfulness", "texture_score"]


def calibrate(config: dict, windows: int, pause: float) -> dict:
    settings = VerificationSettings.from_config(config.get("verification", {}) or {})
    gate = SpoofGate(settings)
    motion = settings.motion_detection
    camera = CameraFrameSource(config.get("camera", {}))

    samples = {key: [] for key in METRIC_KEYS}
    samples["motion_score"] = []
    samples["confidence"] = []
    live_count = 0

    print(f"\n📷 Sampling {windows} windows of {motion.sample_count} frames "
          f"({motion.sample_interval_ms}ms apart)\n")

    try:
        for i in range(windows):
            frames = capture_window(camera, motion.sample_count, motion.sample_interval_ms)
            metrics = analyze(frames[-1])
            verdict = gate.evaluate_liveness(frames)

            for key in METRIC_KEYS:
                samples[key].append(getattr(metrics, key))
            samples["motion_score"].append(verdict.motion.score)
            samples["confidence"].append(verdict.spoof.confidence)
            live_count += int(verdict.is_live)

            status = "LIVE" if verdict.is_live else "REJECT"
            print(f"  [{i + 1:>3}/{windows}] {status:<6} conf={verdict.spoof.confidence:.3f} "
                  f"sharp={metrics.sharpness:7.1f} contrast={metrics.contrast:5.1f} "
                  f"color={metrics.colorfulness:5.1f} texture={metrics.texture_score:.3f} "
                  f"motion={verdict.motion.score:.2f} "
                  f"({verdict.motion.classification.value})")
            if not verdict.is_live:
                print(f"            {'; '.join(verdict.reasons)}")
            time.sleep(pause)
    except KeyboardInterrupt:
        print("\n   Stopped early.")
    finally:
        camera.release()

    summary = {"windows": len(samples["confidence"]), "live": live_count}
    for key, values in samples.items():
        if values:
            arr = np.asarray(values, dtype=np.float64)
            summary[key] = {
                "min": float(arr.min()),
                "p10": float(np.percentile(arr, 10)),
                "median": float(np.median(arr)),
                "p90": float(np.percentile(arr, 90)),
                "max": float(arr.max()),
            }
    return summary


def main():
    parser = argparse.ArgumentParser(description="Sentinel Attendance threshold calibration")
    parser.add_argument("--config", default="config/system_config.yaml")
    parser.add_argument("--windows", type=int, default=20, help="Liveness windows to sample")
    parser.add_argument("--pause", type=float, default=0.5, help="Seconds between windows")
    parser.add_argument("--output", default=None, help="Write the summary as JSON")
    args = parser.parse_args()

    config = load_config(args.config)

    print("\n" + "=" * 55)
    print("   Sentinel Attendance - Threshold Calibration")
    print("=" * 55)

    summary = calibrate(config, args.windows, args.pause)

    print("\n" + "=" * 55)
    print(f"   Live: {summary['live']}/{summary['windows']}")
    for key in METRIC_KEYS + ["motion_score", "confidence"]:
        stats = summary.get(key)
        if stats:
            print(f"   {key:<14} p10={stats['p10']:8.3f} median={stats['median']:8.3f} p90={stats['p90']:8.3f}")
    print("=" * 55)

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w") as f:
            json.dump(summary, f, indent=2)
        logger.info(f"✅ Summary written to {args.output}")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Helper script to generate a synthetic session and stitch it locally."""
import argparse
import os
import subprocess
import sys

parser = argparse.ArgumentParser()
parser.add_argument("--out", required=True)
parser.add_argument("--frames", type=int, default=3)
parser.add_argument("--mode", choices=["cleanup", "stitch"], default="stitch")
parser.add_argument("--workers", type=int, default=4)
parser.add_argument("--seed", type=int, default=0)
args = parser.parse_args()

session_dir = os.path.abspath(args.out)

# run simulator
subprocess.check_call([
    sys.executable, "-m", "simulation.generate_synthetic",
    "--out", session_dir, "--frames", str(args.frames), "--seed", str(args.seed)
])
# run stitching
summary = os.path.join(session_dir, "summary.json")
subprocess.check_call([
    sys.executable, "-m", "stitching.pipeline",
    "-d", session_dir, "-t", os.path.join(session_dir, "poses.csv"),
    "--mode", args.mode, "-w", str(args.workers), "--seed", str(args.seed),
    "--summary", summary
])
print("Done. merged cloud in:", os.path.join(session_dir, "filtered.pcd"))

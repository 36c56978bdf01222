"""Stand-in for hackrf_sweep used by the supervisor tests.

Accepts the real program's -f/-w/-l/-g/-d flags and prints sweep lines for the
requested band. Extra flags simulate misbehaviour:

    --overflow-burst N   after the first line, write N overflow notices to stderr
    --fault-after N      write a USB fault to stderr after N lines (exit if N is 0)
    --once-file PATH     marks the first run; later runs skip the burst and fault at once
    --silent             never print anything
    --ignore-term        ignore SIGTERM
    --exit-after N       exit with status 1 after N lines
"""

import argparse
import os
import signal
import sys
import time
from datetime import datetime


def _line(low_hz: int, high_hz: int, bin_hz: int, peak_db: float) -> str:
    now = datetime.now()
    powers = [-90.0, -85.5, peak_db, -88.0, -91.2]
    return "{}, {}, {}, {}, {:.2f}, {}, {}".format(
        now.strftime("%Y-%m-%d"),
        now.strftime("%H:%M:%S.%f"),
        low_hz,
        high_hz,
        bin_hz,
        len(powers) * 4,
        ", ".join(f"{p:.2f}" for p in powers),
    )


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("-f", default="2400:2500")
    ap.add_argument("-w", type=float, default=1_000_000)
    ap.add_argument("-l", type=int, default=32)
    ap.add_argument("-g", type=int, default=20)
    ap.add_argument("-d", default=None)
    ap.add_argument("--interval", type=float, default=0.02)
    ap.add_argument("--peak-db", type=float, default=-40.0)
    ap.add_argument("--overflow-burst", type=int, default=0)
    ap.add_argument("--fault-after", type=int, default=-1)
    ap.add_argument("--once-file", default=None)
    ap.add_argument("--silent", action="store_true")
    ap.add_argument("--ignore-term", action="store_true")
    ap.add_argument("--exit-after", type=int, default=-1)
    args = ap.parse_args()

    if args.ignore_term:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    overflow_burst = args.overflow_burst
    fault_after = args.fault_after
    if args.once_file:
        if os.path.exists(args.once_file):
            overflow_burst = 0
            if fault_after >= 0:
                fault_after = 0
        else:
            with open(args.once_file, "w") as fh:
                fh.write(str(os.getpid()))
            if fault_after >= 0:
                fault_after = max(fault_after, 1)

    if args.silent:
        while True:
            time.sleep(0.1)

    start_mhz, stop_mhz = (int(x) for x in args.f.split(":"))
    low = start_mhz * 1_000_000
    bin_hz = int(args.w)
    high = low + 5 * bin_hz
    printed = 0
    try:
        while True:
            if fault_after == printed:
                if printed:
                    time.sleep(0.2)
                sys.stderr.write("libusb_submit_transfer failed: LIBUSB_ERROR_NO_DEVICE\n")
                sys.stderr.flush()
                if not printed:
                    return 1
                fault_after = -1
            sys.stdout.write(_line(low, high, bin_hz, args.peak_db) + "\n")
            sys.stdout.flush()
            printed += 1
            if printed == 1 and overflow_burst:
                time.sleep(0.2)
                for _ in range(overflow_burst):
                    sys.stderr.write("USB buffer overflow, dropped samples\n")
                sys.stderr.flush()
            if args.exit_after >= 0 and printed >= args.exit_after:
                return 1
            time.sleep(args.interval)
            low = low + 5 * bin_hz if high + 5 * bin_hz <= stop_mhz * 1_000_000 else start_mhz * 1_000_000
            high = low + 5 * bin_hz
    except BrokenPipeError:
        return 0


if __name__ == "__main__":
    sys.exit(main())

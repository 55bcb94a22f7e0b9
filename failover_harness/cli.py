#!/usr/bin/env python3
"""
Command line runner for the coordinator failover scenario.

Usage Examples:
    failover-harness                         # pipelined mode, 2 workers x 2 slots
    failover-harness --mode both             # pipelined and batch
    failover-harness --workers 3 --slots 1   # parallelism 3
    failover-harness --report report.txt     # write a detailed report
"""

import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

from rich.markup import escape

from .cluster.jobs import BATCH, PIPELINED
from .config import BACKEND_FILE, BACKEND_MQTT
from .console import console
from .scenario import READY_TIMEOUT, TEST_TIMEOUT, RecoveryScenario, ScenarioConfig, ScenarioReport
from .workload import SEQUENCE_END


def run_mode(mode: str, args: argparse.Namespace) -> Tuple[bool, Optional[ScenarioReport], Optional[str]]:
    """Run the scenario for one execution mode."""
    console.print(f"\n{'=' * 80}")
    console.print(f"Running coordinator failover scenario ({mode.upper()})")
    console.print(f"{'=' * 80}")

    work_dir = Path(args.work_dir) / mode if args.work_dir else None
    settings = ScenarioConfig(
        num_workers=args.workers,
        slots_per_worker=args.slots,
        parallelism=args.workers * args.slots,
        timeout=args.timeout,
        ready_timeout=args.ready_timeout,
        execution_mode=mode,
        sequence_end=args.sequence_end,
        backend=args.backend,
        work_dir=work_dir,
    )
    try:
        report = RecoveryScenario(settings).run()
    except Exception as e:
        console.print(f"\n❌ FAILED - {mode}: {type(e).__name__}: {escape(str(e))}")
        return False, None, f"{type(e).__name__}: {e}"

    console.print(f"\n✅ PASSED - {mode} scenario completed in {report.duration_seconds:.1f}s")
    return True, report, None


def write_report(path: Path, results: List[Tuple[str, bool, Optional[ScenarioReport], Optional[str]]]) -> None:
    with open(path, "w") as f:
        f.write("Coordinator Failover Scenario Report\n")
        f.write("=" * 50 + "\n\n")
        f.write(f"Generated: {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
        for mode, success, report, error in results:
            f.write(f"\n{mode.upper()}\n")
            f.write("-" * 30 + "\n")
            f.write(f"Status: {'PASSED' if success else 'FAILED'}\n")
            if report is not None:
                f.write(f"Duration: {report.duration_seconds:.1f}s\n")
                f.write(f"Phases: {' -> '.join(p.name for p in report.phases)}\n")
                f.write(f"Ready markers: {', '.join(report.ready_markers)}\n")
                f.write(f"Finish markers: {', '.join(report.finish_markers)}\n")
                f.write(f"Leader sessions: {', '.join(h.session_id for h in report.leaders)}\n")
                for failure in report.cleanup_failures:
                    f.write(f"Cleanup warning: {failure}\n")
            if error:
                f.write(f"Error: {error}\n")
    console.print(f"\n📄 Detailed report saved to: {escape(str(path))}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Kill the leading coordinator mid-job and verify the job recovers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--mode", choices=[PIPELINED, BATCH, "both"], default=PIPELINED,
                        help="Execution mode of the workload job")
    parser.add_argument("--workers", type=int, default=2, help="Worker runtimes to start")
    parser.add_argument("--slots", type=int, default=2, help="Task slots per worker")
    parser.add_argument("--timeout", type=float, default=TEST_TIMEOUT,
                        help="Overall scenario deadline in seconds")
    parser.add_argument("--ready-timeout", type=float, default=READY_TIMEOUT,
                        help="Deadline for all ready markers in seconds")
    parser.add_argument("--sequence-end", type=int, default=SEQUENCE_END,
                        help="Length n of the generated sequence 1..n")
    parser.add_argument("--backend", choices=[BACKEND_FILE, BACKEND_MQTT], default=BACKEND_FILE,
                        help="Leader announcement backend")
    parser.add_argument("--work-dir", help="Keep configs and logs under this directory")
    parser.add_argument("--report", help="Write a detailed report to this file")
    args = parser.parse_args(argv)

    modes = [PIPELINED, BATCH] if args.mode == "both" else [args.mode]
    results = []
    total_start_time = time.time()
    try:
        for mode in modes:
            success, report, error = run_mode(mode, args)
            results.append((mode, success, report, error))
    except KeyboardInterrupt:
        console.print("\n\n⚠️ Scenario interrupted by user")
        return 130

    console.print(f"\n{'=' * 80}")
    console.print("SCENARIO SUMMARY")
    console.print(f"{'=' * 80}")
    for mode, success, report, _ in results:
        status = "PASSED" if success else "FAILED"
        time_str = f"{report.duration_seconds:.1f}s" if report is not None else "-"
        console.print(f"{mode:20} | {status:6} | {time_str:>8}")
    console.print(f"Total execution time: {time.time() - total_start_time:.1f}s")

    if args.report:
        write_report(Path(args.report), results)

    return 0 if all(success for _, success, _, _ in results) else 1


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .clip_report import ClipVerdict, format_report, parse_clip_report
from .config import AdmSettings, cli_overrides_from_args
from .items import ItemSnapshot, StatusKind
from .logging import bind_run, configure
from .paths import OutputPolicy
from .scheduler import ConversionScheduler, ProcessingMode, ProcessingPolicy, SchedulerEvent
from .tool_check import Toolchain, probe_toolchain


EXIT_OK = 0
EXIT_WITH_FILE_ERRORS = 2
EXIT_PREFLIGHT_FAILED = 3


def cmd_preflight(cfg: AdmSettings) -> int:
    st = probe_toolchain(Toolchain.from_settings(cfg))
    for tool in st.tools:
        if tool.available:
            logger.info(f"{tool.role}: {tool.name} -> {tool.path}")
        else:
            logger.error(f"{tool.role}: {tool.name} NOT FOUND")
    if not st.info.available:
        logger.warning("Sample rates cannot be probed; resampling decisions will assume 48000 Hz")
    if not st.can_convert:
        logger.error("Encoder and clip analyzer are both required (afconvert, afclip ship with macOS).")
        return EXIT_PREFLIGHT_FAILED
    return EXIT_OK


def _item_result(snap: ItemSnapshot) -> Dict[str, Any]:
    status = snap.status
    entry: Dict[str, Any] = {
        "source": str(snap.source),
        "status": status.kind.value,
        "output": str(snap.output_path) if snap.output_path else None,
    }
    if status.kind is StatusKind.ERROR:
        entry["error"] = status.message
    if status.report is not None:
        entry["report"] = status.report.to_dict()
    return entry


def _write_summary(path: Path, summary: Dict[str, Any]) -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        logger.debug(f"Run summary written: {path}")
    except OSError as e:
        logger.warning(f"Failed to write run summary JSON: {e}")


def cmd_convert(
    cfg: AdmSettings,
    paths: List[str],
    *,
    mode: ProcessingMode,
    policy: ProcessingPolicy,
    soundcheck: bool,
    use_output_folder: bool,
    summary_path: Optional[str] = None,
    show_reports: bool = True,
) -> int:
    st = probe_toolchain(Toolchain.from_settings(cfg))
    if not st.analyzer.available:
        logger.error(f"{cfg.analyzer_bin} not found; cannot analyze")
        return EXIT_PREFLIGHT_FAILED

    scheduler = ConversionScheduler.from_settings(cfg, policy)
    submitted = scheduler.submit(paths)
    if not submitted:
        logger.info("No audio files found (accepted: wav, aif, aiff, m4a)")
        return EXIT_OK
    needs_encoder = any(not s.already_encoded for s in submitted)
    if needs_encoder and not st.encoder.available:
        logger.error(f"{cfg.encoder_bin} not found; cannot convert")
        return EXIT_PREFLIGHT_FAILED

    def on_event(ev: SchedulerEvent) -> None:
        if ev.kind == "item" and ev.item is not None and ev.item.status.is_processing:
            logger.debug(f"{ev.item.name}: {ev.item.status.describe()}")

    scheduler.subscribe(on_event)

    t0 = time.time()
    try:
        counts = scheduler.run(
            mode,
            soundcheck=soundcheck,
            output_policy=OutputPolicy.from_flag(use_output_folder),
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted; waiting for in-flight items to finish")
        scheduler.stop()
        scheduler.wait()
        counts = scheduler.counts()
    elapsed = time.time() - t0

    snapshots = scheduler.items()
    if show_reports:
        for snap in snapshots:
            report = snap.status.report
            if report is not None:
                print(format_report(report))
            elif snap.status.kind is StatusKind.ERROR:
                print(f"{snap.name}: ERROR {snap.status.message}")

    unknown = sum(
        1 for s in snapshots if s.status.report is not None and s.status.report.verdict is ClipVerdict.UNKNOWN
    )
    clipped = sum(
        1 for s in snapshots if s.status.report is not None and s.status.report.verdict is ClipVerdict.CLIPPED
    )
    logger.info(
        f"Files: {counts.total} | Completed: {counts.completed} | Failed: {counts.failed}"
        f" | Clipped: {clipped} | Unknown: {unknown} | {elapsed:.2f}s"
    )

    summary: Dict[str, Any] = {
        "mode": mode.value,
        "policy": policy.value,
        "workers": scheduler.max_concurrent,
        "soundcheck": bool(soundcheck),
        "output_folder": bool(use_output_folder),
        "counts": {
            "total": counts.total,
            "completed": counts.completed,
            "failed": counts.failed,
            "pending": counts.pending,
            "clipped": clipped,
            "unknown": unknown,
        },
        "timing_s": round(elapsed, 3),
        "items": [_item_result(s) for s in snapshots],
        "timestamp": int(time.time()),
    }
    if summary_path:
        _write_summary(Path(summary_path), summary)
    elif cfg.log_json:
        _write_summary(Path(str(cfg.log_json) + ".summary.json"), summary)

    return EXIT_OK if counts.failed == 0 and counts.pending == 0 else EXIT_WITH_FILE_ERRORS


def cmd_parse_report(path: str) -> int:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.error(f"Cannot read {p}: {e}")
        return EXIT_WITH_FILE_ERRORS
    report = parse_clip_report(text, p.name, str(p))
    print(format_report(report))
    return EXIT_OK


def _add_run_options(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("paths", nargs="+", help="Audio files and/or directories (wav, aif, aiff, m4a)")
    sp.add_argument(
        "--batch",
        action="store_true",
        help="Unattended batch policy (more concurrent items; see batch_workers)",
    )
    sp.add_argument("--workers", type=int, default=None, help="Override concurrent item count")
    sc_group = sp.add_mutually_exclusive_group()
    sc_group.add_argument(
        "--soundcheck",
        dest="include_soundcheck",
        action="store_const",
        const=True,
        default=None,
        help="Two-pass encode with SoundCheck metadata (default from settings)",
    )
    sc_group.add_argument(
        "--no-soundcheck",
        dest="include_soundcheck",
        action="store_const",
        const=False,
        help="Single-pass encode without SoundCheck (faster)",
    )
    folder_group = sp.add_mutually_exclusive_group()
    folder_group.add_argument(
        "--output-folder",
        dest="use_output_folder",
        action="store_const",
        const=True,
        default=None,
        help="Write outputs into an 'M4A' subfolder next to each source",
    )
    folder_group.add_argument(
        "--same-folder",
        dest="use_output_folder",
        action="store_const",
        const=False,
        help="Write outputs next to each source",
    )
    sp.add_argument("--summary", default=None, help="Write a JSON run summary to this path")
    sp.add_argument("--quiet-reports", action="store_true", help="Do not print per-file clip reports")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="adm-convert")
    p.add_argument("--log-level", default=None, help="Console log level (default from settings)")
    p.add_argument("--log-json", default=None, help="Write structured JSON lines log to this path")
    p.add_argument("--config", dest="config_path", default=None, help="Path to TOML config file")
    p.add_argument("--write-config", action="store_true", help="Write the effective config to TOML and exit")

    sub = p.add_subparsers(dest="cmd")
    sub.add_parser("preflight", help="Check encoder, info probe and clip analyzer availability")

    p_convert = sub.add_parser("convert", help="Convert WAV/AIFF to M4A and analyze for clipping")
    _add_run_options(p_convert)
    p_convert.add_argument(
        "--analyze-only",
        action="store_true",
        help="Encode to a temporary file for analysis only; nothing is written next to the sources",
    )

    p_analyze = sub.add_parser("analyze", help="Analyze only (same as convert --analyze-only)")
    _add_run_options(p_analyze)

    p_parse = sub.add_parser("parse-report", help="Parse a saved afclip transcript")
    p_parse.add_argument("file", help="Text file with afclip output")
    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    overrides = cli_overrides_from_args(args)
    cfg = AdmSettings.load(
        config_path=Path(args.config_path).expanduser() if args.config_path else None,
        overrides=overrides,
    )

    if args.write_config:
        written = cfg.write(Path(args.config_path).expanduser() if args.config_path else None)
        print(f"Config written to: {written}")
        return EXIT_OK

    configure(cfg.log_level, cfg.log_json)
    bind_run()

    if args.cmd == "preflight":
        return cmd_preflight(cfg)
    if args.cmd in ("convert", "analyze"):
        policy = ProcessingPolicy.BATCH if args.batch else ProcessingPolicy.INTERACTIVE
        if args.workers is not None:
            field = "batch_workers" if policy is ProcessingPolicy.BATCH else "interactive_workers"
            cfg = cfg.model_copy(update={field: max(1, args.workers)})
        analyze_only = args.cmd == "analyze" or bool(getattr(args, "analyze_only", False))
        return cmd_convert(
            cfg,
            args.paths,
            mode=ProcessingMode.ANALYZE_ONLY if analyze_only else ProcessingMode.CONVERT,
            policy=policy,
            soundcheck=cfg.include_soundcheck,
            use_output_folder=cfg.use_output_folder,
            summary_path=args.summary,
            show_reports=not args.quiet_reports,
        )
    if args.cmd == "parse-report":
        return cmd_parse_report(args.file)
    p.print_help(sys.stderr)
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

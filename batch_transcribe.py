#!/usr/bin/env python3
"""
Batch transcription: process a folder of WAV files.
Writes a JSON summary with per-file text, timing and status.

Usage:
  python batch_transcribe.py --input_dir data/clips --model_dir models/whisper_onnx [options]
  python batch_transcribe.py --input_dir data/clips --pattern "*.wav" --workers 2 --summary out/summary.json
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from whisper_onnx.errors import TranscriptionError
from whisper_onnx.log import setup_logging
from whisper_onnx.transcriber import ModelState, Transcriber


# ────────────────────────────────────────────────────────────────────────────
# Per-file transcription with timing + error capture
# ────────────────────────────────────────────────────────────────────────────

def _transcribe_one(transcriber: Transcriber, input_path: Path) -> dict:
    """Transcribe a single file; return a result dict with timing and status."""
    result = {
        "input": str(input_path),
        "text": None,
        "status": "ok",
        "error": None,
        "duration_s": None,
        "elapsed_ms": None,
    }
    t0 = time.perf_counter()
    try:
        import soundfile as sf
        info = sf.info(str(input_path))
        result["duration_s"] = round(info.duration, 3)
        result["text"] = transcriber.transcribe_file(input_path)
    except TranscriptionError as e:
        result["status"] = "transcription_failed"
        result["error"] = str(e)
    except Exception as e:
        result["status"] = "error"
        result["error"] = str(e)
    result["elapsed_ms"] = round((time.perf_counter() - t0) * 1000, 1)
    return result


# ────────────────────────────────────────────────────────────────────────────
# Batch runner
# ────────────────────────────────────────────────────────────────────────────

def run_batch(
    transcriber: Transcriber,
    input_dir: Path,
    pattern: str = "*.wav",
    workers: int = 1,
    summary_path: Optional[Path] = None,
    progress: bool = True,
) -> dict:
    """
    Transcribe all files matching `pattern` under `input_dir`.
    Returns summary dict.
    """
    input_files = sorted(input_dir.rglob(pattern))
    if not input_files:
        print(f"No files matching '{pattern}' found in {input_dir}", file=sys.stderr)
        return {"total_files": 0, "ok": 0, "errors": 0, "results": []}

    results: list[dict] = []
    start_time = time.perf_counter()
    pbar = tqdm(total=len(input_files), desc="Transcribing", unit="file", disable=not progress)

    if workers <= 1:
        for src in input_files:
            results.append(_transcribe_one(transcriber, src))
            _log_result(results[-1], pbar)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_transcribe_one, transcriber, src) for src in input_files]
            for fut in as_completed(futures):
                results.append(fut.result())
                _log_result(results[-1], pbar)
        results.sort(key=lambda r: r["input"])
    pbar.close()

    total_elapsed = time.perf_counter() - start_time
    ok = sum(1 for r in results if r["status"] == "ok")
    total_audio_s = sum(r["duration_s"] or 0 for r in results)
    avg_rtf = (
        (sum(r["elapsed_ms"] or 0 for r in results) / 1000.0 / total_audio_s)
        if total_audio_s > 0
        else None
    )

    summary = {
        "total_files": len(input_files),
        "ok": ok,
        "errors": len(results) - ok,
        "total_audio_s": round(total_audio_s, 2),
        "wall_time_s": round(total_elapsed, 2),
        "avg_rtf": round(avg_rtf, 3) if avg_rtf else None,
        "results": results,
    }

    if summary_path:
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        with open(summary_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, ensure_ascii=False)
        print(f"Summary written to {summary_path}")

    return summary


def _log_result(r: dict, pbar) -> None:
    pbar.set_postfix_str(Path(r["input"]).name[:30])
    pbar.update(1)
    if r["status"] != "ok":
        tqdm.write(f"  ✗ {r['input']} ERROR: {r['error']}")


def _print_summary(s: dict) -> None:
    rtf = f"{s['avg_rtf']:.3f}x" if s.get("avg_rtf") else "N/A"
    print(
        f"\n{'─'*50}\n"
        f"  Total files : {s['total_files']}\n"
        f"  OK          : {s['ok']}\n"
        f"  Errors      : {s['errors']}\n"
        f"  Audio total : {s.get('total_audio_s', 0):.1f}s\n"
        f"  Wall time   : {s.get('wall_time_s', 0):.1f}s\n"
        f"  Avg RTF     : {rtf}\n"
        f"{'─'*50}"
    )


# ────────────────────────────────────────────────────────────────────────────
# CLI
# ────────────────────────────────────────────────────────────────────────────

def main() -> int:
    parser = argparse.ArgumentParser(
        description="Batch transcription: folder of WAVs → JSON summary with text per file."
    )
    parser.add_argument("--input_dir", "-i", required=True, help="Input directory (searched recursively)")
    parser.add_argument("--model_dir", type=str, default="models/whisper_onnx")
    parser.add_argument("--backend", type=str, default="onnx", choices=("onnx", "torchscript"))
    parser.add_argument("--pattern", type=str, default="*.wav", help="Glob pattern to match audio files (default: *.wav)")
    parser.add_argument("--workers", type=int, default=1, help="Parallel workers (default: 1; >1 uses threads)")
    parser.add_argument("--summary", type=str, default=None, metavar="PATH", help="Write JSON summary to path (default: input_dir/transcripts.json)")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    setup_logging(args.verbose)

    input_dir = Path(args.input_dir)
    model_dir = Path(args.model_dir)
    if not input_dir.exists():
        print(f"Error: input_dir not found: {input_dir}", file=sys.stderr)
        return 1
    if not model_dir.exists():
        print(f"Error: model_dir not found: {model_dir}", file=sys.stderr)
        return 1

    summary_path = Path(args.summary) if args.summary else (input_dir / "transcripts.json")
    with Transcriber(model_dir, backend=args.backend) as transcriber:
        if transcriber.initialize() is not ModelState.READY:
            print(f"Error: {transcriber.failure}", file=sys.stderr)
            return 1
        summary = run_batch(
            transcriber,
            input_dir=input_dir,
            pattern=args.pattern,
            workers=args.workers,
            summary_path=summary_path,
        )
    _print_summary(summary)
    return 0 if summary["errors"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())

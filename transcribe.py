#!/usr/bin/env python3
"""
Transcribe one WAV with an exported Whisper encoder/decoder (CPU).
Only the first 30 s are transcribed.
Usage:
  python transcribe.py --input speech.wav --model_dir models/whisper_onnx [options]
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path

from whisper_onnx.config import ModelConfig, Normalization
from whisper_onnx.errors import TranscriptionError
from whisper_onnx.log import setup_logging
from whisper_onnx.transcriber import ModelState, Transcriber


def build_config(args: argparse.Namespace, model_dir: Path) -> ModelConfig:
    config = ModelConfig.from_json(model_dir)
    overrides = {
        "temperature": args.temperature,
        "max_new_tokens": args.max_new_tokens,
        "normalization": Normalization(args.normalization),
        "intra_op_threads": args.threads,
    }
    if args.seed is not None:
        overrides["seed"] = args.seed
    return dataclasses.replace(config, **overrides)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transcribe a WAV file: audio -> log-mel -> encoder -> greedy decoder -> text.")
    parser.add_argument("--input", "-i", required=True, help="Input WAV path (resampled to 16 kHz mono)")
    parser.add_argument("--model_dir", type=str, default="models/whisper_onnx", help="Directory with encoder_model.onnx, decoder_model.onnx, tokenizer.json")
    parser.add_argument("--backend", type=str, default="onnx", choices=("onnx", "torchscript"))
    parser.add_argument("--temperature", type=float, default=0.0, help="0 = greedy (default)")
    parser.add_argument("--seed", type=int, default=None, help="Sampling seed (temperature > 0)")
    parser.add_argument("--max_new_tokens", type=int, default=128)
    parser.add_argument("--normalization", type=str, default="global", choices=[n.value for n in Normalization], help="Feature normalization (default: global, the encoder input variant)")
    parser.add_argument("--threads", type=int, default=4, help="Intra-op threads (default: 4)")
    parser.add_argument("--allow_degraded_vocab", action="store_true", help="Run with the built-in fallback vocabulary if no tokenizer loads")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)

    model_dir = Path(args.model_dir)
    if not model_dir.exists():
        print(f"Error: model_dir not found: {model_dir}", file=sys.stderr)
        return 1
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: input file not found: {input_path}", file=sys.stderr)
        return 1

    config = build_config(args, model_dir)
    with Transcriber(
        model_dir,
        config=config,
        backend=args.backend,
        allow_degraded_vocabulary=args.allow_degraded_vocab,
    ) as transcriber:
        if transcriber.initialize() is not ModelState.READY:
            print(f"Error: {transcriber.failure}", file=sys.stderr)
            return 1
        if transcriber.degraded:
            print("Warning: using fallback vocabulary; output quality is undefined.", file=sys.stderr)
        try:
            text = transcriber.transcribe_file(input_path)
        except TranscriptionError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())

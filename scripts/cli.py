"""
CLI to analyze a recorded clip -> audience summary + spot ranking JSON.
"""
from __future__ import annotations
import argparse, json, os
from signage.catalog import load_catalog
from signage.config import Settings
from signage.pipeline import analyze_recorded_video

def main(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument("--video", required=True, help="Path to input video")
    p.add_argument("--catalog", default=None, help="Optional JSON spot catalog")
    p.add_argument("--out", default="output/targeting.json", help="Path to output JSON")
    args = p.parse_args(argv)

    settings = Settings()
    catalog = load_catalog(args.catalog) if args.catalog else None
    result = analyze_recorded_video(args.video, settings, catalog)
    print(json.dumps(result, indent=2, ensure_ascii=False))

    out_dir = os.path.dirname(args.out)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(result, f, indent=2, ensure_ascii=False)
    print(f"Analysis written to {args.out}")

if __name__ == "__main__":
    main()

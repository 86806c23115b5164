# scripts/index_event.py
import argparse
import mimetypes
import os
from glob import glob

from main import build_context
from snapmatch.services.catalog import IMAGE_EXTENSIONS, upload_images


def find_all_images(folder: str):
    image_paths = []
    for ext in IMAGE_EXTENSIONS:
        image_paths.extend(glob(os.path.join(folder, "**", f"*{ext}"), recursive=True))
    return sorted(image_paths)


def main(event_id: str, folder: str | None = None, batch_size: int = 20):
    ctx = build_context()

    if folder:
        files = find_all_images(folder)
        print(f"Found {len(files)} images across all subfolders.")
        for start in range(0, len(files), batch_size):
            batch = []
            for path in files[start:start + batch_size]:
                with open(path, "rb") as f:
                    batch.append((os.path.basename(path), f.read(), mimetypes.guess_type(path)[0] or "image/jpeg"))
            result = upload_images(ctx, event_id, batch)
            for failure in result.failed:
                print(f"[FAIL] {failure.filename}: {failure.error}")
            print(f"[OK] uploaded {len(result.uploaded)}, indexed {result.indexed}")
        return

    # No folder: (re)index whatever the event already has in storage
    report = ctx.face_search.index_all_event_images(event_id)
    for key, error in report.failed.items():
        print(f"[FAIL] {key}: {error}")
    print(
        f"Indexed {len(report.successful)} images, skipped {len(report.skipped)} already indexed, "
        f"{len(report.failed)} failed."
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--event", required=True, help="event id, e.g. 482913")
    parser.add_argument("folder", nargs="?", help="optional folder of images to upload into the event first")
    parser.add_argument("--batch-size", type=int, default=20)
    args = parser.parse_args()
    main(args.event, args.folder, args.batch_size)

import argparse
import sys
from pathlib import Path

import cv2
import uvicorn

from face_timeclock.config import API_HOST, API_PORT, CAMERA_INDEX, DB_PATH, ENROLLMENT_SAMPLES, EXTRACTION_DEVICE
from face_timeclock.database import AttendanceDatabase
from face_timeclock.exceptions import AttendanceError
from face_timeclock.logger import setup_logger
from face_timeclock.models import SLOT_ORDER, CaptureSample


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face identification time clock")

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Capture one descriptor slot from the webcam")
    enroll.add_argument("--id", required=True, dest="enrollee_id", help="Enrollee ID")
    enroll.add_argument("--name", required=True, help="Enrollee name")
    enroll.add_argument(
        "--slot",
        default="front",
        choices=[slot.value for slot in SLOT_ORDER],
        help="Descriptor slot to fill",
    )
    enroll.add_argument("--samples", type=int, default=ENROLLMENT_SAMPLES, help="Number of face samples")
    enroll.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    imported = subparsers.add_parser("import-enrollee", help="Import face data exported by the capture front-end")
    imported.add_argument("--id", required=True, dest="enrollee_id", help="Enrollee ID")
    imported.add_argument("--name", required=True, help="Enrollee name")
    imported.add_argument("--file", required=True, type=Path, help="JSON payload or bare base64 image file")

    kiosk = subparsers.add_parser("kiosk", help="Run the webcam time-clock kiosk")
    kiosk.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    web = subparsers.add_parser("web", help="Serve the time-clock HTTP API")
    web.add_argument("--host", default=API_HOST, help="Host interface")
    web.add_argument("--port", type=int, default=API_PORT, help="Port")
    web.add_argument("--no-engine", action="store_true", help="Skip loading face models (image fallback only)")

    identify = subparsers.add_parser("identify", help="Identify the face in an image file")
    identify.add_argument("image", type=Path, help="Image file path")

    stats = subparsers.add_parser("stats", help="Print attendance statistics")
    stats.add_argument("--from", dest="date_from", default="", help="First date (YYYY-MM-DD)")
    stats.add_argument("--to", dest="date_to", default="", help="Last date (YYYY-MM-DD)")

    return parser


def _load_engine():
    from face_timeclock.face_engine import FaceEngine

    return FaceEngine(device=EXTRACTION_DEVICE)


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "enroll":
            from face_timeclock.enrollment_service import EnrollmentService
            from face_timeclock.gallery import DescriptorGallery

            db = AttendanceDatabase(DB_PATH)
            gallery = DescriptorGallery()
            gallery.load(db.list_enrollees_with_descriptors())
            service = EnrollmentService(db=db, gallery=gallery, engine=_load_engine())
            service.capture_slot(
                enrollee_id=args.enrollee_id,
                name=args.name,
                slot=args.slot,
                camera_index=args.camera,
                target_samples=args.samples,
            )
            print(f"Enrollment successful for {args.enrollee_id} ({args.name}), slot {args.slot}.")
            return 0

        if args.command == "import-enrollee":
            from face_timeclock.enrollment_service import EnrollmentService
            from face_timeclock.gallery import DescriptorGallery

            db = AttendanceDatabase(DB_PATH)
            service = EnrollmentService(db=db, gallery=DescriptorGallery())
            saved = service.import_payload(args.enrollee_id, args.name, args.file.read_text(encoding="utf-8"))
            print(f"Imported {', '.join(slot.value for slot in saved)} for {args.enrollee_id} ({args.name}).")
            return 0

        if args.command == "kiosk":
            from face_timeclock.kiosk import create_kiosk
            from face_timeclock.kiosk_runtime import KioskRuntime

            db = AttendanceDatabase(DB_PATH)
            KioskRuntime(create_kiosk(db, extractor=_load_engine())).run(camera_index=args.camera)
            print("Kiosk stopped.")
            return 0

        if args.command == "web":
            from face_timeclock.web_app import create_web_app

            engine = None if args.no_engine else _load_engine()
            app = create_web_app(db=AttendanceDatabase(DB_PATH), engine=engine)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "identify":
            from face_timeclock.gallery import DescriptorGallery
            from face_timeclock.identification import IdentificationService, describe_result

            bgr = cv2.imread(str(args.image))
            if bgr is None:
                raise AttendanceError(f"Could not read image {args.image}.")
            rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

            db = AttendanceDatabase(DB_PATH)
            gallery = DescriptorGallery()
            gallery.load(db.list_enrollees_with_descriptors())
            result = IdentificationService(gallery).identify(
                CaptureSample(image=rgb, embedding=_load_engine().extract(rgb))
            )
            enrollee = gallery.get(result.enrollee_id) if result.enrollee_id else None
            print(describe_result(result, enrollee.name if enrollee else None))
            return 0 if result.accepted else 2

        if args.command == "stats":
            db = AttendanceDatabase(DB_PATH)
            summary = db.attendance_stats(date_from=args.date_from, date_to=args.date_to)
            print(f"Total records:    {summary['totalRecords']}")
            print(f"Unique enrollees: {summary['uniqueEnrollees']}")
            for label, key in (("Shift", "byShift"), ("Direction", "byDirection"), ("Verified", "byVerified")):
                counts = ", ".join(f"{name}={count}" for name, count in sorted(summary[key].items()))
                print(f"{label + ':':<17} {counts or '-'}")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())

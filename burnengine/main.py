import argparse
import re
import sys

from burnengine.config import settings
from burnengine.domain.models import JobState
from burnengine.logging import LoggerFactory, setup_logging
from burnengine.services.burner import BurnService, create_copy_engine
from burnengine.storage.devices import human_size, normalize_identifier
from burnengine.storage.exceptions import (
    BurnError,
    DeviceNotEligibleError,
    DeviceNotFoundError,
    EnumerationError,
    InsufficientSpaceError,
    SourceImageError,
    VerificationError,
    WriteError,
)
from burnengine.storage.gate import Acknowledgment, GateState
from burnengine.storage.progress import format_progress_line


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_NOT_WRITABLE = 3
EXIT_WRITE_FAILED = 4
EXIT_CANCELLED = 130

_SIZE_SUFFIXES = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}

log = LoggerFactory.for_system()


def parse_block_size(value):
    """Parse ``4194304``, ``4M`` or ``512K`` into a positive byte count."""
    match = re.fullmatch(r"\s*(\d+)\s*([KMG]?)(?:i?B)?\s*", str(value), re.IGNORECASE)
    if not match:
        raise argparse.ArgumentTypeError(f"invalid block size: {value!r}")
    size = int(match.group(1)) * _SIZE_SUFFIXES[match.group(2).upper()]
    if size <= 0:
        raise argparse.ArgumentTypeError("block size must be positive")
    return size


def exit_code_for(error):
    if isinstance(error, (InsufficientSpaceError, DeviceNotEligibleError)):
        return EXIT_NOT_WRITABLE
    if isinstance(error, (WriteError, VerificationError)):
        return EXIT_WRITE_FAILED
    if isinstance(error, (SourceImageError, DeviceNotFoundError)):
        return EXIT_USAGE
    return EXIT_FAILURE


def build_parser():
    parser = argparse.ArgumentParser(
        prog="burnengine",
        description="Write a bootable ISO image to a removable USB drive",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (every block)")
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Confirm and print the plan without unmounting or writing",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List removable USB drives")

    info_parser = subparsers.add_parser("info", help="Show classified block devices")
    info_parser.add_argument("-d", "--device", help="Only show this device (e.g. /dev/sdb)")

    write_parser = subparsers.add_parser("write", help="Write an ISO image to a USB drive")
    write_parser.add_argument("-i", "--image", help="Path to the ISO image")
    write_parser.add_argument("-d", "--device", help="Target device (e.g. /dev/sdb)")
    write_parser.add_argument(
        "--verify",
        action="store_true",
        default=None,
        help="Read the device back and compare checksums after writing",
    )
    write_parser.add_argument(
        "--block-size", type=parse_block_size, help="Copy block size (e.g. 4M)"
    )
    write_parser.add_argument(
        "--backend", choices=("native", "dd"), help="Copy backend (default from settings)"
    )

    verify_parser = subparsers.add_parser(
        "verify", help="Compare a written USB drive against an ISO image"
    )
    verify_parser.add_argument("-i", "--image", help="Path to the ISO image")
    verify_parser.add_argument("-d", "--device", help="Device to read back (e.g. /dev/sdb)")

    subparsers.add_parser("wizard", help="Interactive write, verify, list or info")
    return parser


def _print_error(message):
    print(f"Error: {message}", file=sys.stderr)


def _print_devices(devices):
    for index, device in enumerate(devices, start=1):
        print(f"  {index}. {device.format_label()}")


def select_device(service):
    """Ask the operator to pick one of the eligible drives; None if they cannot."""
    devices = service.list_candidate_devices()
    if not devices:
        print("No removable USB drives detected. Plug one in and try again.")
        return None
    print("Removable USB drives:")
    _print_devices(devices)
    answer = input(f"Select a drive [1-{len(devices)}]: ").strip()
    if not answer.isdigit() or not 1 <= int(answer) <= len(devices):
        _print_error(f"invalid selection {answer!r}")
        return None
    return devices[int(answer) - 1].identifier


def confirm(service, job):
    """Run both confirmation steps at the terminal. True once double confirmed."""
    gate = job.gate
    print()
    print(f"  Image : {job.source_image_path} ({human_size(job.total_bytes)})")
    print(f"  Target: {job.target_device.format_label()}")
    for line in gate.prompt_lines():
        print(line)
    gate.restart_timer()
    answer = input("Continue? [y/N]: ").strip().lower()
    state = service.confirm_step(job, Acknowledgment.first(answer in ("y", "yes")))
    if state is GateState.CANCELLED:
        print("Aborted. Nothing was written.")
        return False

    for line in gate.prompt_lines():
        print(line)
    echo = input("> ")
    state = service.confirm_step(job, Acknowledgment.final(echo))
    if state is not GateState.DOUBLE_CONFIRMED:
        print("Confirmation did not match. Aborted, nothing was written.")
        return False
    return True


def follow_progress(service, job, handle):
    """Render progress lines until the job ends; Ctrl-C requests cancellation."""
    try:
        for snapshot in handle.progress():
            sys.stdout.write("\r" + format_progress_line(snapshot).ljust(60))
            sys.stdout.flush()
    except KeyboardInterrupt:
        print("\nInterrupt! Stopping after the current block...")
        service.cancel(job)
    print()
    return handle.result()


def report_result(result):
    if result.ok:
        print(f"Done: wrote {human_size(result.bytes_written)}.")
        if result.verified:
            print("Verification passed.")
        return EXIT_OK
    if result.warning:
        print(f"WARNING: {result.warning}", file=sys.stderr)
    if result.state is JobState.CANCELLED:
        print("Cancelled.")
        return EXIT_CANCELLED
    _print_error(str(result.error))
    print(f"Device condition: {result.device_condition.value}", file=sys.stderr)
    return exit_code_for(result.error)


def write_image(service, image, device_id, *, verify=None, dry_run=False):
    job = service.begin_job(image, device_id)
    try:
        confirmed = confirm(service, job)
    except (KeyboardInterrupt, EOFError):
        print()
        service.cancel(job)
        print("Aborted. Nothing was written.")
        return EXIT_CANCELLED
    if not confirmed:
        return EXIT_CANCELLED

    if dry_run:
        print("DRY-RUN: would unmount and write:")
        print(f"  {job.source_image_path} -> {job.target_device.identifier}")
        print(f"  {job.total_bytes} bytes")
        service.cancel(job)
        return EXIT_OK

    handle = service.run(job, verify=verify)
    print(f"Writing {job.source_image_path.name} to {job.target_device.identifier}...")
    return report_result(follow_progress(service, job, handle))


def verify_drive(service, image, device_id):
    print(f"Verifying {device_id} against {image}...")
    matches, image_digest, device_digest = service.verify_device(image, device_id)
    print(f"  Image  SHA256: {image_digest}")
    print(f"  Device SHA256: {device_digest}")
    if not matches:
        _print_error("checksums do not match; the write failed or the drive is faulty")
        return EXIT_WRITE_FAILED
    print("Verification passed: the drive matches the image.")
    return EXIT_OK


def command_list(service, args):
    devices = service.list_candidate_devices()
    if not devices:
        print("No removable USB drives detected.")
        return EXIT_OK
    print("Removable USB drives:")
    _print_devices(devices)
    print("Writing to any of these will ERASE all data on it.")
    return EXIT_OK


def command_info(service, args):
    return show_device_info(service, args.device)


def show_device_info(service, device_id=None):
    if device_id:
        device = service.catalog.get_device(device_id)
        if device is None:
            _print_error(f"{normalize_identifier(device_id)} not found")
            return EXIT_FAILURE
        devices = [device]
    else:
        devices = service.catalog.list_block_devices()
    for device in devices:
        reason = service.catalog.rejection_reason(device)
        print(device.format_label())
        print(f"  Bus        : {device.bus_kind.value}")
        print(f"  Removable  : {'yes' if device.removable else 'no'}")
        print(f"  Size       : {device.size_bytes} bytes")
        print(f"  Mounted at : {', '.join(device.mount_points) or '-'}")
        print(f"  Writable   : {'yes' if reason is None else 'no (' + reason + ')'}")
    return EXIT_OK


def _image_and_device(service, image=None, device_id=None):
    """Fill in whatever the command line left out; (None, None) if the operator gives up."""
    image = image or input("Path to ISO image: ").strip()
    if not image:
        _print_error("no image given")
        return None, None
    device_id = device_id or select_device(service)
    if not device_id:
        return None, None
    return image, device_id


def command_write(service, args):
    image, device_id = _image_and_device(service, args.image, args.device)
    if not device_id:
        return EXIT_USAGE
    return write_image(service, image, device_id, verify=args.verify, dry_run=args.dry_run)


def command_verify(service, args):
    image, device_id = _image_and_device(service, args.image, args.device)
    if not device_id:
        return EXIT_USAGE
    return verify_drive(service, image, device_id)


def _wizard_write(service, args):
    image, device_id = _image_and_device(service)
    if not device_id:
        return EXIT_USAGE
    verify = input("Verify after writing? [Y/n]: ").strip().lower() not in ("n", "no")
    return write_image(service, image, device_id, verify=verify, dry_run=args.dry_run)


def _wizard_verify(service, args):
    image, device_id = _image_and_device(service)
    if not device_id:
        return EXIT_USAGE
    return verify_drive(service, image, device_id)


def _wizard_info(service, args):
    device_id = select_device(service)
    if not device_id:
        return EXIT_USAGE
    return show_device_info(service, device_id)


WIZARD_OPERATIONS = (
    ("Write an ISO image to a USB drive", _wizard_write),
    ("Verify a USB drive against an ISO image", _wizard_verify),
    ("List USB drives", command_list),
    ("Show device info", _wizard_info),
)


def command_wizard(service, args):
    print("BurnEngine USB - interactive wizard")
    for index, (label, _) in enumerate(WIZARD_OPERATIONS, start=1):
        print(f"  {index}. {label}")
    answer = input(f"What do you want to do? [1-{len(WIZARD_OPERATIONS)}, default 1]: ").strip() or "1"
    if not answer.isdigit() or not 1 <= int(answer) <= len(WIZARD_OPERATIONS):
        _print_error(f"invalid choice {answer!r}")
        return EXIT_USAGE
    _, operation = WIZARD_OPERATIONS[int(answer) - 1]
    return operation(service, args)


COMMANDS = {
    "list": command_list,
    "info": command_info,
    "write": command_write,
    "verify": command_verify,
    "wizard": command_wizard,
}


def create_service(args):
    block_size = getattr(args, "block_size", None)
    if block_size:
        settings.set_setting("block_size", block_size)
    engine = create_copy_engine(getattr(args, "backend", None), block_size)
    return BurnService(engine=engine)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.verbose, trace=args.trace)
    if args.dry_run:
        print("DRY-RUN mode: nothing will be written.")

    try:
        service = create_service(args)
        return COMMANDS[args.command](service, args)
    except EnumerationError as error:
        _print_error(str(error))
        log.error(str(error))
        return EXIT_FAILURE
    except BurnError as error:
        _print_error(str(error))
        return exit_code_for(error)
    except (KeyboardInterrupt, EOFError):
        print()
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())

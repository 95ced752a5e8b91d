"""jobline CLI

설정 디렉토리(config/)의 브로커에 직접 연결하여 잡 등록과 상태 조회를 수행합니다.
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from jobline import __version__


def _parse_json(value: str | None, option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        print(f"Error: {option} is not valid JSON ({e.msg})")
        sys.exit(1)


def _print(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def _run(args: argparse.Namespace) -> int:
    from admin.main import build_queues
    from broker import create_broker
    from common.config import load_config
    from dispatcher.exception import DispatcherError
    from dispatcher.status import StatusService

    config = load_config(args.config_dir)
    broker = create_broker(config.get("broker"))
    await broker.connect()
    try:
        queues = build_queues(broker, config.get("queues") or {})
        status = StatusService(broker)

        if args.command == "enqueue":
            queue = queues.get(args.queue)
            if queue is None:
                print(f"Error: queue '{args.queue}' is not configured")
                return 1
            try:
                job = await queue.add(
                    args.name,
                    _parse_json(args.payload, "--payload"),
                    _parse_json(args.options, "--options"),
                )
            except DispatcherError as e:
                print(f"Error: {e}")
                return 1
            _print({"id": job.id, "queue": job.queue_name, "name": job.name, "state": job.state.value})

        elif args.command == "status":
            result = await status.get_state(args.job_id, args.queue)
            if result is None:
                print(f"Error: job '{args.job_id}' not found")
                return 1
            _print(result.model_dump(mode="json"))

        elif args.command == "counts":
            names = [args.queue] if args.queue else list(queues)
            _print({name: (await status.get_counts(name)).model_dump() for name in names})

        elif args.command == "repeatables":
            queue = queues.get(args.queue)
            if queue is None:
                print(f"Error: queue '{args.queue}' is not configured")
                return 1
            if args.clear:
                removed = await queue.clear_all_repeatables()
                print(f"Removed {removed} repeatable(s) from '{args.queue}'")
            else:
                _print([r.model_dump(mode="json") for r in await queue.get_repeatables()])
    finally:
        await broker.close()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="jobline",
        description="jobline - 비동기 잡 큐 관리 도구"
    )
    parser.add_argument("-c", "--config-dir", default=None, help="Config directory (default: ./config)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Add a job to a queue")
    enqueue_parser.add_argument("queue", help="Queue name")
    enqueue_parser.add_argument("name", help="Job name")
    enqueue_parser.add_argument("-p", "--payload", default=None, help="Payload as JSON")
    enqueue_parser.add_argument("-o", "--options", default=None, help="Job options as JSON")

    # status command
    status_parser = subparsers.add_parser("status", help="Show job state and progress")
    status_parser.add_argument("job_id", help="Job id")
    status_parser.add_argument("-q", "--queue", default=None, help="Restrict lookup to a queue")

    # counts command
    counts_parser = subparsers.add_parser("counts", help="Show job counts per state")
    counts_parser.add_argument("queue", nargs="?", default=None, help="Queue name (default: all)")

    # repeatables command
    repeat_parser = subparsers.add_parser("repeatables", help="List repeatable registrations")
    repeat_parser.add_argument("queue", help="Queue name")
    repeat_parser.add_argument("--clear", action="store_true", help="Remove all registrations")

    # version
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()

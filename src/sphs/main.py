from __future__ import annotations

import argparse
import logging
import os
import signal
import threading

from .config import load_config
from .errors import ConfigurationError
from .runner import TaskRunner, TaskRunReport, build_runners


logger = logging.getLogger("sphs")

RETRY_DELAY_SECONDS = 5


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sphs", description="Spotify play history source (incremental cursor poller)")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env SPHS_LOG_LEVEL or INFO",
    )

    mode = p.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Run one poll cycle per user and exit")
    mode.add_argument("--daemon", action="store_true", help="Poll forever until SIGINT/SIGTERM")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _run_forever(runner: TaskRunner, stop_event: threading.Event) -> None:
    cycle_id = 0
    while not stop_event.is_set():
        cycle_id += 1
        try:
            report = runner.run_once()
        except Exception:  # noqa: BLE001
            logger.exception("cycle crashed: partition=%s id=%d", runner.task.partition, cycle_id)
            stop_event.wait(RETRY_DELAY_SECONDS)
            continue

        if report.error:
            logger.warning(
                "cycle failed: partition=%s id=%d redelivery=%s error=%s",
                report.partition,
                cycle_id,
                report.redelivery,
                report.error,
            )
            # 重投失败时不会经过 poll 的等待，这里补一个退避
            if runner.pending:
                stop_event.wait(RETRY_DELAY_SECONDS)
        elif report.records_delivered:
            logger.info(
                "cycle summary: partition=%s id=%d delivered=%d committed=%s duration_ms=%d",
                report.partition,
                cycle_id,
                report.records_delivered,
                report.committed_offset,
                report.duration_ms,
            )


def _run_once_all(runners: tuple[TaskRunner, ...]) -> list[TaskRunReport | None]:
    """
    每个 partition 各跑一个周期，并行执行：每个 poll 都会先等待一个轮询间隔。
    周期内崩溃的 runner 对应位置为 None。
    """
    reports: list[TaskRunReport | None] = [None] * len(runners)

    def _one(i: int, runner: TaskRunner) -> None:
        try:
            reports[i] = runner.run_once()
        except Exception:  # noqa: BLE001
            logger.exception("cycle crashed: partition=%s", runner.task.partition)
        finally:
            runner.stop()

    threads = [
        threading.Thread(target=_one, args=(i, runner), name=f"sphs-once-{i}", daemon=True)
        for i, runner in enumerate(runners)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return reports


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    env_log_level = os.environ.get("SPHS_LOG_LEVEL")
    log_level = _resolve_log_level(args.log_level or env_log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
        runners = build_runners(config)
    except ConfigurationError as e:
        logger.error("configuration error: %s", e)
        return 2

    mode = "daemon" if args.daemon and not args.once else "once"
    logger.info("sphs start: mode=%s config=%s", mode, args.config)
    logger.info(
        "config: users=%s topic=%s poll_interval_seconds=%d sqlite_path=%s sink_path=%s",
        ",".join(config.spotify.usernames),
        config.spotify.topic,
        config.spotify.poll_interval_seconds,
        config.sqlite_path,
        config.sink_path,
    )

    if mode == "once":
        failures = 0
        for report in _run_once_all(runners):
            if report is None:
                failures += 1
                continue
            if report.error:
                failures += 1
            logger.info(
                "once done: partition=%s delivered=%d committed=%s cursor=%s error=%s",
                report.partition,
                report.records_delivered,
                report.committed_offset,
                report.cursor_after,
                report.error,
            )
        return 1 if failures else 0

    stop_event = threading.Event()

    def _handle_signal(signum, frame) -> None:  # noqa: ANN001, ARG001
        logger.info("received signal %d, stopping", signum)
        stop_event.set()
        for r in runners:
            r.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    threads = [
        threading.Thread(
            target=_run_forever,
            args=(runner, stop_event),
            name=f"sphs-{runner.task.partition.get('username', i)}",
            daemon=True,
        )
        for i, runner in enumerate(runners)
    ]
    for t in threads:
        t.start()
    # 主线程需要保持可被信号唤醒
    while any(t.is_alive() for t in threads):
        for t in threads:
            t.join(timeout=0.5)
    logger.info("sphs stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

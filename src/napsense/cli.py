"""CLI for the napsense sleep-detection engine."""

import asyncio
import logging

import click

from napsense.config import get_settings


@click.group()
@click.option("--store-path", default=None, type=click.Path(dir_okay=False),
              help="Model store file (default: NAPSENSE_STORE_PATH or ~/.napsense/model.json).")
@click.option("--log-level", default=None, help="Logging level (default: NAPSENSE_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, store_path: str | None, log_level: str | None) -> None:
    """napsense — nap and sleep onset detection from heart rate and motion."""
    settings = get_settings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["store_path"] = store_path or settings.store_path


def _open_store(ctx: click.Context):
    from napsense.detection.store import JsonFileStore

    return JsonFileStore(ctx.obj["store_path"])


def _resolve_bracket(store, age: int | None):
    from napsense.detection.age import bracket_for_age, load_age_bracket

    if age is None:
        age = get_settings().age
    if age is not None:
        return bracket_for_age(age)
    return load_age_bracket(store)


@main.command()
@click.option("--timeout", "-t", default=10.0, help="Scan timeout in seconds.")
def scan(timeout: float) -> None:
    """Scan for nearby BLE heart-rate monitors."""
    from napsense.scanner import scan as do_scan

    asyncio.run(do_scan(timeout))


@main.command()
@click.option("--address", "-a", default=None, help="BLE address to connect to.")
@click.option("--duration", "-d", default=None, type=float, help="Recording duration in seconds.")
@click.option("--output", "-o", default=None, help="Output file path.")
@click.option("--resting-hr", default=None, type=float, help="Resting HR to store with the log.")
def record(address: str | None, duration: float | None, output: str | None,
           resting_hr: float | None) -> None:
    """Record live heart rate to a session log for later replay."""
    from napsense.recorder import record as do_record

    try:
        asyncio.run(do_record(address, duration, output, resting_hr))
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@main.command()
@click.argument("file", type=click.Path(exists=True))
@click.option("--output", "-o", default=None, help="Write the replay result as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Report skipped log lines.")
@click.option("--age", default=None, type=click.IntRange(min=0), help="Wearer age in years.")
@click.option("--countdown", default=None, type=click.IntRange(min=1),
              help="Start a nap countdown (minutes) once sleep is detected.")
@click.option("--store", "use_store", is_flag=True,
              help="Feed the recorded session into the persisted model.")
@click.option("--still", is_flag=True, help="Assume no motion between motion entries.")
@click.pass_context
def replay(ctx: click.Context, file: str, output: str | None, verbose: bool, age: int | None,
           countdown: int | None, use_store: bool, still: bool) -> None:
    """Replay a session log through the detection engine."""
    from napsense.detection.store import MemoryStore
    from napsense.replay import replay_file

    store = _open_store(ctx) if use_store else MemoryStore()
    bracket = _resolve_bracket(store, age)
    result = replay_file(
        file,
        output,
        verbose,
        bracket=bracket,
        store=store,
        countdown_minutes=countdown,
        assume_still=still,
        evaluation_interval=get_settings().evaluation_interval_sec,
    )
    if result.sleep_start_time:
        click.echo(f"Sleep onset: {result.sleep_start_time} "
                   f"({result.disturbance_count} disturbance(s))")
    else:
        click.echo("No sleep detected.")
    if use_store:
        click.echo(f"Sessions recorded: {result.sessions_recorded}, day ratio {result.day_ratio:.3f}")


@main.command()
@click.option("--address", "-a", default=None, help="BLE address to connect to.")
@click.option("--resting-hr", default=None, type=float, help="Known resting heart rate (bpm).")
@click.option("--still", is_flag=True, help="Assume the wearer lies still (no motion sensor).")
@click.option("--age", default=None, type=click.IntRange(min=0), help="Wearer age in years.")
@click.option("--duration", "-d", default=None, type=float, help="Stop after this many seconds.")
@click.pass_context
def monitor(ctx: click.Context, address: str | None, resting_hr: float | None, still: bool,
            age: int | None, duration: float | None) -> None:
    """Run live sleep detection from a BLE heart-rate monitor."""
    from napsense.detection.motion import MotionGate
    from napsense.detection.state_machine import (
        SleepEvent,
        SleepStateMachine,
        SourceUnavailableError,
        SteadyMotionSource,
    )
    from napsense.detection.threshold import ThresholdModel
    from napsense.heart_rate import BleHeartRateSource

    settings = get_settings()
    store = _open_store(ctx)
    model = ThresholdModel(_resolve_bracket(store, age), store).initialize()
    engine = SleepStateMachine(
        model,
        MotionGate(motion_threshold=settings.motion_threshold),
        BleHeartRateSource(address, resting_hr=resting_hr),
        SteadyMotionSource() if still else None,
        evaluation_interval=settings.evaluation_interval_sec,
        motion_still_threshold=settings.motion_still_threshold_sec,
        max_disturbance=settings.max_disturbance_sec,
    )
    if resting_hr:
        engine.on_resting_heart_rate(resting_hr)

    def _on_event(event: SleepEvent) -> None:
        snap = event.snapshot
        click.echo(f"[{snap.state.value}] {snap.status} "
                   f"(HR {snap.heart_rate:.0f}, threshold {snap.threshold_bpm:.0f})")

    engine.subscribe(_on_event)

    async def _monitor() -> None:
        await engine.start_sleep_detection()
        click.echo(f"Monitoring (ratio {model.day_ratio:.3f}, bracket {model.bracket.value}). "
                   "Press Ctrl+C to stop.")
        try:
            if duration:
                await asyncio.sleep(duration)
            else:
                while True:
                    await asyncio.sleep(60)
                    click.echo(f"  {engine.heart_rate_condition_description}; "
                               f"{engine.motion_condition_description}")
        finally:
            await engine.stop_sleep_detection()

    try:
        asyncio.run(_monitor())
    except SourceUnavailableError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        click.echo("\nStopped.")


# ---------------------------------------------------------------------------
# Model management
# ---------------------------------------------------------------------------


@main.group()
def model() -> None:
    """Inspect or reset the personalized threshold model."""


@model.command("show")
@click.option("--age", default=None, type=click.IntRange(min=0), help="Wearer age in years.")
@click.pass_context
def model_show(ctx: click.Context, age: int | None) -> None:
    """Show the learned ratios and session history."""
    from napsense.detection.threshold import ThresholdModel

    store = _open_store(ctx)
    hr_model = ThresholdModel(_resolve_bracket(store, age), store).initialize()
    state = hr_model.state
    night = f"{state.night_ratio:.3f}" if state.night_ratio is not None else \
        f"unset (using {hr_model.effective_night_ratio:.3f})"
    last = state.last_update.isoformat(timespec="seconds") if state.last_update else "never"

    click.echo(f"Bracket:     {hr_model.bracket.value}")
    click.echo(f"Day ratio:   {state.day_ratio:.3f}")
    click.echo(f"Night ratio: {night}")
    click.echo(f"First use:   {state.first_use.isoformat(timespec='seconds')}")
    click.echo(f"Last update: {last}")
    click.echo(f"Sessions:    {len(hr_model.sessions)}")
    for session in hr_model.sessions:
        kind = "night" if session.is_night_sleep else "day"
        click.echo(f"  {session.date:%Y-%m-%d %H:%M} {kind:5s} "
                   f"avg {session.average_heart_rate:.1f} / rest {session.resting_heart_rate:.0f} "
                   f"({len(session.heart_rates)} samples)")


@model.command("reset")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def model_reset(ctx: click.Context, yes: bool) -> None:
    """Discard all learned data and return to bracket defaults."""
    from napsense.detection.threshold import ThresholdModel

    if not yes:
        click.confirm("Discard the personalized model?", abort=True)
    store = _open_store(ctx)
    hr_model = ThresholdModel(_resolve_bracket(store, None), store).initialize()
    hr_model.reset()
    click.echo(f"Model reset to {hr_model.bracket.value} defaults (ratio {hr_model.day_ratio:.3f}).")


# ---------------------------------------------------------------------------
# Age bracket
# ---------------------------------------------------------------------------


@main.group()
def bracket() -> None:
    """Show or set the wearer's age bracket."""


@bracket.command("show")
@click.pass_context
def bracket_show(ctx: click.Context) -> None:
    """Show the stored age bracket and its defaults."""
    from napsense.detection.age import load_age_bracket

    current = load_age_bracket(_open_store(ctx))
    click.echo(f"{current.value}: default ratio {current.default_ratio:.3f}, "
               f"min qualifying {current.min_qualifying_seconds}s")


@bracket.command("set")
@click.argument("name", required=False, type=click.Choice(["teen", "adult", "senior"]))
@click.option("--age", default=None, type=click.IntRange(min=0), help="Derive the bracket from an age.")
@click.pass_context
def bracket_set(ctx: click.Context, name: str | None, age: int | None) -> None:
    """Store the wearer's age bracket (by name or --age)."""
    from napsense.detection.age import AgeBracket, bracket_for_age, save_age_bracket

    if name is None and age is None:
        raise click.UsageError("Give a bracket name or --age.")
    chosen = AgeBracket(name) if name is not None else bracket_for_age(age)
    save_age_bracket(_open_store(ctx), chosen)
    click.echo(f"Age bracket set to {chosen.value} (default ratio {chosen.default_ratio:.3f}).")

#!/usr/bin/env python3
"""
Roast ROR Calculator - Consolidated Main Script

Computes Rate of Rise (RoR) statistics for a coffee roast profile from four
manually recorded checkpoints: Turning Point, Yellowing, First Crack and Drop.
Each checkpoint is entered as a temperature (°C) and an elapsed time (MM:SS).
This consolidated version contains all functionality in a single file for easy deployment.

Author: Coffee Analytics Team
Version: 0.2.0
"""

import argparse
import json
import os
import sys
import warnings
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.ticker import FuncFormatter, MultipleLocator


# =============================================================================
# DATA MODEL
# =============================================================================

class Stage(Enum):
    """The four roast checkpoints, in roast order."""

    TURNING_POINT = "tp"
    YELLOWING = "yellow"
    FIRST_CRACK = "fc"
    DROP = "drop"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]


STAGE_LABELS = {
    Stage.TURNING_POINT: "Turning Point",
    Stage.YELLOWING: "Yellowing",
    Stage.FIRST_CRACK: "First Crack",
    Stage.DROP: "Drop",
}

STAGE_ORDER = (Stage.TURNING_POINT, Stage.YELLOWING, Stage.FIRST_CRACK, Stage.DROP)

# Consecutive stage pairs bounding each phase
PHASE_PAIRS = (
    (Stage.TURNING_POINT, Stage.YELLOWING),
    (Stage.YELLOWING, Stage.FIRST_CRACK),
    (Stage.FIRST_CRACK, Stage.DROP),
)


class RawCheckpointInput(NamedTuple):
    """Free-text fields as typed by the user."""

    temperature: str = ""
    time: str = ""


class Checkpoint(NamedTuple):
    temperature_celsius: float
    elapsed_seconds: float


class PhaseResult(NamedTuple):
    """Derived statistics for the phase between two consecutive checkpoints."""

    label: str
    duration_seconds: float
    rate_per_minute: float
    percentage_of_total: float

    @property
    def duration(self) -> str:
        return format_seconds_to_time(self.duration_seconds)


def phase_label(start: Stage, end: Stage) -> str:
    return f"{start.label} ➔ {end.label}"


class RoastInputError(ValueError):
    """Base class for every error that ends a calculation attempt."""


class FieldError(RoastInputError):
    """A stage's temperature or time text could not be parsed."""

    def __init__(self, stage: Stage):
        self.stage = stage
        super().__init__(
            f"{stage.label} input is invalid. Check the temperature and time (MM:SS)."
        )


class TemporalOrderingError(RoastInputError):
    def __init__(self):
        super().__init__("Times must be in order: TP < Yellow < First Crack < Drop.")


class ThermalOrderingError(RoastInputError):
    def __init__(self):
        super().__init__(
            "Temperatures should generally rise: TP < Yellow < First Crack <= Drop."
        )


# =============================================================================
# TIME CODEC MODULE
# =============================================================================

def parse_time_to_seconds(time_str: str) -> Optional[int]:
    """
    Parse an "MM:SS" string into total seconds.

    Args:
        time_str: Text with exactly one colon, e.g. "05:30" or "12:07"

    Returns:
        Total seconds, or None if the text is not a valid MM:SS value.
        Minutes are unbounded; seconds must lie in [0, 59].
    """
    parts = str(time_str).split(":")
    if len(parts) != 2:
        return None

    parts = [part.strip() for part in parts]
    # Plain ASCII digits only, no sign or underscores
    if not all(part.isascii() and part.isdigit() for part in parts):
        return None

    minutes = int(parts[0])
    seconds = int(parts[1])

    if seconds > 59:
        return None

    return minutes * 60 + seconds


def format_seconds_to_time(total_seconds: float) -> str:
    """
    Format a number of seconds as zero-padded "MM:SS".

    Seconds are rounded half-up. A remainder that rounds to 60 is carried
    into the minutes, so 119.6 formats as "02:00".

    Args:
        total_seconds: Non-negative duration in seconds

    Returns:
        Formatted time string

    Raises:
        ValueError: If the value is negative or not finite
    """
    if not np.isfinite(total_seconds) or total_seconds < 0:
        raise ValueError(f"Cannot format {total_seconds!r} as MM:SS")

    rounded = int(np.floor(total_seconds + 0.5))
    minutes, seconds = divmod(rounded, 60)
    return f"{minutes:02d}:{seconds:02d}"


# =============================================================================
# CHECKPOINT PARSER MODULE
# =============================================================================

RawInputs = Mapping[Stage, Union[RawCheckpointInput, Mapping[str, str]]]


def _raw_for_stage(raw_inputs: RawInputs, stage: Stage) -> Optional[RawCheckpointInput]:
    value = raw_inputs.get(stage)
    if value is None:
        value = raw_inputs.get(stage.value)  # plain "tp"/"yellow"/... keys
    if value is None:
        return None
    if isinstance(value, Mapping):
        return RawCheckpointInput(value.get("temperature", ""), value.get("time", ""))
    try:
        return RawCheckpointInput(*value)
    except TypeError:
        raise FieldError(stage) from None


def _parse_temperature(temp_str: str) -> Optional[float]:
    text = str(temp_str)
    if "_" in text or not text.isascii():
        return None
    try:
        temp = float(text)
    except (TypeError, ValueError):
        return None
    return temp if np.isfinite(temp) else None


def parse_checkpoints(raw_inputs: RawInputs) -> Dict[Stage, Checkpoint]:
    """
    Convert the raw text fields of all four stages into numeric checkpoints.

    Stages are parsed in roast order and parsing stops at the first stage
    whose temperature or time is unusable.

    Args:
        raw_inputs: Mapping of Stage to RawCheckpointInput (or a dict with
            "temperature" and "time" keys)

    Returns:
        Checkpoints keyed by stage, in roast order

    Raises:
        FieldError: Naming the first stage that failed to parse
    """
    checkpoints: Dict[Stage, Checkpoint] = {}

    for stage in STAGE_ORDER:
        raw = _raw_for_stage(raw_inputs, stage)
        if raw is None:
            raise FieldError(stage)

        temp = _parse_temperature(raw.temperature)
        seconds = parse_time_to_seconds(raw.time)

        if temp is None or seconds is None or seconds < 0:
            raise FieldError(stage)

        checkpoints[stage] = Checkpoint(temperature_celsius=temp, elapsed_seconds=float(seconds))

    return checkpoints


# =============================================================================
# SEQUENCE VALIDATOR MODULE
# =============================================================================

def validate_sequence(checkpoints: Mapping[Stage, Checkpoint]) -> None:
    """
    Check that the checkpoints describe a plausible roast.

    Times must strictly increase across all stages. Temperatures must
    strictly increase up to First Crack; Drop may equal First Crack.
    The thermal check only runs once the temporal check has passed.

    Raises:
        TemporalOrderingError: If elapsed times are out of order
        ThermalOrderingError: If temperatures are out of order
    """
    tp, yellow, fc, drop = (checkpoints[stage] for stage in STAGE_ORDER)

    if not (tp.elapsed_seconds < yellow.elapsed_seconds
            < fc.elapsed_seconds < drop.elapsed_seconds):
        raise TemporalOrderingError()

    if not (tp.temperature_celsius < yellow.temperature_celsius
            < fc.temperature_celsius <= drop.temperature_celsius):
        raise ThermalOrderingError()


# =============================================================================
# ROR CALCULATOR MODULE
# =============================================================================

def compute_phases(checkpoints: Mapping[Stage, Checkpoint]) -> List[PhaseResult]:
    """
    Compute duration, RoR and share of total time for each roast phase.

    Expects checkpoints that already passed validate_sequence(). Values are
    not rounded; that is left to presentation.

    Args:
        checkpoints: Checkpoints keyed by stage

    Returns:
        Three PhaseResults: TP ➔ Yellowing, Yellowing ➔ First Crack,
        First Crack ➔ Drop
    """
    times = np.array([checkpoints[stage].elapsed_seconds for stage in STAGE_ORDER], dtype=float)
    temps = np.array([checkpoints[stage].temperature_celsius for stage in STAGE_ORDER], dtype=float)

    durations = np.diff(times)
    temp_rises = np.diff(temps)

    # RoR in °C/min; zero-length phases get a rate of 0
    rates = np.zeros_like(durations)
    np.divide(temp_rises, durations / 60, out=rates, where=durations > 0)

    total_duration = times[-1] - times[0]
    percentages = np.zeros_like(durations)
    if total_duration > 0:
        percentages = durations / total_duration * 100

    return [
        PhaseResult(
            label=phase_label(start, end),
            duration_seconds=float(durations[i]),
            rate_per_minute=float(rates[i]),
            percentage_of_total=float(percentages[i]),
        )
        for i, (start, end) in enumerate(PHASE_PAIRS)
    ]


def calculate(raw_inputs: RawInputs) -> List[PhaseResult]:
    """
    Parse, validate and compute the phase statistics of one roast.

    Args:
        raw_inputs: Raw temperature/time text for all four stages

    Returns:
        The three PhaseResults in roast order

    Raises:
        RoastInputError: The first FieldError, TemporalOrderingError or
            ThermalOrderingError encountered
    """
    checkpoints = parse_checkpoints(raw_inputs)
    validate_sequence(checkpoints)
    return compute_phases(checkpoints)


# =============================================================================
# PREFERENCES MODULE
# =============================================================================

PREFS_ENV_VAR = "ROAST_ROR_PREFS"

# Only these two temperatures are remembered between sessions
REMEMBERED_STAGE_KEYS = {
    Stage.YELLOWING: "yellow_temp",
    Stage.FIRST_CRACK: "fc_temp",
}


def default_prefs_path() -> Path:
    env_path = os.environ.get(PREFS_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path.home() / ".roast_ror_prefs.json"


class PreferenceStore:
    """Small JSON key-value file holding remembered form values."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else default_prefs_path()
        self._values: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            warnings.warn(f"Ignoring unreadable preferences file {self.path}: {e}")
            return {}

        if not isinstance(data, dict):
            warnings.warn(f"Ignoring malformed preferences file {self.path}")
            return {}

        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str, default: str = "") -> str:
        return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._values[key] = str(value)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self._values, f, indent=2)

    def remembered_temperatures(self) -> Dict[Stage, str]:
        return {stage: self.get(key) for stage, key in REMEMBERED_STAGE_KEYS.items()}

    def remember_temperature(self, stage: Stage, value: str) -> None:
        if stage not in REMEMBERED_STAGE_KEYS:
            raise ValueError(f"Temperature for {stage.label} is not remembered")
        self.set(REMEMBERED_STAGE_KEYS[stage], value)


def initial_inputs(store: PreferenceStore) -> Dict[Stage, RawCheckpointInput]:
    """Blank form, pre-filled with the remembered Yellowing/First Crack temperatures."""
    remembered = store.remembered_temperatures()
    return {
        stage: RawCheckpointInput(temperature=remembered.get(stage, ""), time="")
        for stage in STAGE_ORDER
    }


def reset_inputs(current: Mapping[Stage, RawCheckpointInput]) -> Dict[Stage, RawCheckpointInput]:
    """Clear the form but keep the Yellowing and First Crack temperatures."""
    return {
        stage: RawCheckpointInput(
            temperature=current[stage].temperature if stage in REMEMBERED_STAGE_KEYS else "",
            time="",
        )
        for stage in STAGE_ORDER
    }


# =============================================================================
# REPORTING MODULE
# =============================================================================

def results_to_dataframe(results: List[PhaseResult]) -> pd.DataFrame:
    """
    Tabulate phase results for display or export.

    Args:
        results: Output of calculate()

    Returns:
        DataFrame with phase, ror (2 dp), duration (MM:SS),
        duration_seconds and percentage (1 dp) columns
    """
    return pd.DataFrame([
        {
            "phase": r.label,
            "ror": round(r.rate_per_minute, 2),
            "duration": r.duration,
            "duration_seconds": r.duration_seconds,
            "percentage": round(r.percentage_of_total, 1),
        }
        for r in results
    ], columns=["phase", "ror", "duration", "duration_seconds", "percentage"])


def get_profile_summary(checkpoints: Mapping[Stage, Checkpoint], results: List[PhaseResult]) -> Dict[str, Any]:
    """
    Summarize a calculated roast profile.

    Args:
        checkpoints: Parsed checkpoints
        results: Phase results computed from the same checkpoints

    Returns:
        Total duration, overall RoR from TP to Drop, development ratio
        (First Crack ➔ Drop share of time) and the fastest phase
    """
    tp = checkpoints[Stage.TURNING_POINT]
    drop = checkpoints[Stage.DROP]
    total = drop.elapsed_seconds - tp.elapsed_seconds
    overall_rate = (drop.temperature_celsius - tp.temperature_celsius) / (total / 60) if total > 0 else 0.0
    peak = max(results, key=lambda r: r.rate_per_minute)

    return {
        "total_duration_seconds": total,
        "total_duration": format_seconds_to_time(total),
        "overall_ror": overall_rate,
        "development_ratio": results[-1].percentage_of_total,
        "peak_phase": peak.label,
        "peak_ror": peak.rate_per_minute,
    }


def format_results_table(results: List[PhaseResult]) -> str:
    df = results_to_dataframe(results)
    df = df.drop(columns=["duration_seconds"])
    df["ror"] = df["ror"].map(lambda v: f"{v:.2f}")
    df["percentage"] = df["percentage"].map(lambda v: f"{v:.1f}%")
    df.columns = ["Phase", "RoR (°C/min)", "Duration", "Share"]
    return df.to_string(index=False)


def export_results_csv(results: List[PhaseResult], output_file: Union[str, Path]) -> Path:
    output_file = Path(output_file)
    if output_file.parent and not output_file.parent.exists():
        raise FileNotFoundError(f"Output folder not found: {output_file.parent}")
    results_to_dataframe(results).to_csv(output_file, index=False)
    return output_file


# =============================================================================
# PLOTTING MODULE
# =============================================================================

def _mmss(x: float, pos: Any = None) -> str:
    return f"{int(x//60)}:{int(x%60):02d}"


def plot_profile(
    checkpoints: Mapping[Stage, Checkpoint],
    results: List[PhaseResult],
    title: Optional[str] = None,
    save_path: Optional[str] = None
) -> None:
    """
    Plot checkpoint temperatures and per-phase RoR.

    Checkpoints are drawn as labelled markers; each phase's RoR is a flat
    segment on a secondary axis spanning the phase.

    Args:
        checkpoints: Parsed checkpoints
        results: Phase results for the same checkpoints
        title: Optional title for the plot
        save_path: Optional path to save the plot
    """
    times = np.array([checkpoints[s].elapsed_seconds for s in STAGE_ORDER])
    temps = np.array([checkpoints[s].temperature_celsius for s in STAGE_ORDER])

    fig, ax1 = plt.subplots(figsize=(12, 6))

    bt_color = "#27aeef"  # Blue
    ror_color = "#ea5545"  # Red

    ax1.scatter(times, temps, color=bt_color, zorder=5, label="Checkpoint BT")

    label_offset = 2
    for stage, x_evt, y_evt in zip(STAGE_ORDER, times, temps):
        ax1.text(x_evt, y_evt + label_offset,
                 f"{stage.value.upper()}\n{_mmss(x_evt)}\n{y_evt:.1f}°C",
                 ha="center", va="bottom")

    ax2 = ax1.twinx()
    for i, result in enumerate(results):
        ax2.hlines(result.rate_per_minute, times[i], times[i + 1],
                   colors=ror_color, linestyles="--",
                   label="RoR (°C/min)" if i == 0 else "_nolegend_")
        ax2.text((times[i] + times[i + 1]) / 2, result.rate_per_minute,
                 f"{result.rate_per_minute:.2f}", ha="center", va="bottom",
                 color=ror_color)
    ax2.set_ylabel("Rate of Rise (°C/min)")
    ax2.set_ylim(bottom=0)

    # Dynamic x-ticks every ~30s
    max_ticks = 10
    span = int(times[-1])
    interval = max(((span + max_ticks*30 - 1) // (max_ticks*30)) * 30, 30)
    ax1.xaxis.set_major_locator(MultipleLocator(interval))
    ax1.xaxis.set_major_formatter(FuncFormatter(_mmss))
    ax1.set_xlabel("Time (mm:ss)")
    ax1.set_ylabel("Temperature (°C)")

    h1, l1 = ax1.get_legend_handles_labels()
    h2, l2 = ax2.get_legend_handles_labels()
    ax1.legend(h1 + h2, l1 + l2, loc="upper left",
               bbox_to_anchor=(1.1, .6), borderaxespad=0)

    ax1.grid(True, axis='y')
    ax1.grid(False, axis='x')
    ax2.grid(False)

    if title:
        plt.title(title)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()


# =============================================================================
# MAIN ANALYSIS PIPELINE
# =============================================================================

def analyze_profile(raw_inputs: RawInputs, options: Dict[str, Any]) -> Optional[pd.DataFrame]:
    """
    Complete roast profile analysis.

    Args:
        raw_inputs: Raw temperature/time text for all four stages
        options: Analysis options (export_csv, plot, save_plot)

    Returns:
        Results DataFrame or None if the input was rejected
    """
    print("=" * 60)
    print("ROAST ROR CALCULATOR")
    print("=" * 60)

    # Step 1: Parse and validate
    print("\n1. Checking roast checkpoints...")
    try:
        checkpoints = parse_checkpoints(raw_inputs)
        validate_sequence(checkpoints)
    except RoastInputError as e:
        print(f"ERROR: {e}")
        return None

    for stage, cp in checkpoints.items():
        print(f"  - {stage.label}: {cp.temperature_celsius:.1f}°C at {format_seconds_to_time(cp.elapsed_seconds)}")

    # Step 2: Compute phases
    print("\n2. Calculating phase RoR...")
    results = compute_phases(checkpoints)
    print(format_results_table(results))

    summary = get_profile_summary(checkpoints, results)
    print(f"\n  - Total time TP ➔ Drop: {summary['total_duration']}")
    print(f"  - Overall RoR: {summary['overall_ror']:.2f}°C/min")
    print(f"  - Development ratio: {summary['development_ratio']:.1f}%")

    # Step 3: Export data (if requested)
    if options.get('export_csv'):
        print("\n3. Exporting results to CSV...")
        try:
            output_file = export_results_csv(results, options['export_csv'])
            print(f"✓ Results exported to {output_file}")
        except OSError as e:
            print(f"ERROR exporting results: {e}")

    # Step 4: Generate plot (if requested)
    if options.get('plot') or options.get('save_plot'):
        print("\n4. Generating visualization...")
        try:
            plot_profile(checkpoints, results, title="Roast Profile RoR",
                         save_path=options.get('save_plot'))
            print("✓ Visualization complete")
        except Exception as e:
            print(f"ERROR generating plot: {e}")

    print("\n" + "=" * 60)
    print("ANALYSIS COMPLETE!")
    print("=" * 60)

    return results_to_dataframe(results)


def _stage_argument(values: Optional[List[str]], remembered: str, name: str) -> RawCheckpointInput:
    """Turn [TEMP] TIME command line values into a RawCheckpointInput."""
    if not values:
        return RawCheckpointInput(temperature=remembered, time="")
    if len(values) == 1:
        return RawCheckpointInput(temperature=remembered, time=values[0])
    if len(values) == 2:
        return RawCheckpointInput(temperature=values[0], time=values[1])
    raise ValueError(f"--{name} takes [TEMP] TIME, got {len(values)} values")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Calculate roast phase Rate of Rise from four checkpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --tp 160 00:00 --yellow 170 02:00 --fc 196 08:00 --drop 205 10:00
  python main.py --tp 160 00:00 --yellow 02:00 --fc 08:00 --drop 205 10:00   # remembered temps
  python main.py ... --remember            # remember Yellow/FC temperatures
  python main.py ... --save-plot ror.png   # save plot to file
  python main.py ... --export-csv ror.csv  # export results to CSV
        """
    )

    parser.add_argument("--tp", nargs=2, metavar=("TEMP", "TIME"), required=True,
                        help="Turning Point temperature (°C) and time (MM:SS)")
    parser.add_argument("--yellow", nargs="+", metavar="VALUE",
                        help="Yellowing [TEMP] TIME; TEMP defaults to the remembered value")
    parser.add_argument("--fc", nargs="+", metavar="VALUE",
                        help="First Crack [TEMP] TIME; TEMP defaults to the remembered value")
    parser.add_argument("--drop", nargs=2, metavar=("TEMP", "TIME"), required=True,
                        help="Drop temperature (°C) and time (MM:SS)")

    parser.add_argument(
        "--remember",
        action="store_true",
        help="Remember the Yellowing and First Crack temperatures for next time"
    )

    parser.add_argument(
        "--prefs",
        metavar="PATH",
        help=f"Preferences file (default: ${PREFS_ENV_VAR} or ~/.roast_ror_prefs.json)"
    )

    parser.add_argument("--export-csv", metavar="FILE", help="Export results to CSV file")
    parser.add_argument("--plot", action="store_true", help="Display the profile plot")
    parser.add_argument("--save-plot", metavar="FILE", help="Save the profile plot to FILE")

    args = parser.parse_args()

    store = PreferenceStore(args.prefs)
    defaults = initial_inputs(store)

    try:
        raw_inputs = {
            Stage.TURNING_POINT: RawCheckpointInput(*args.tp),
            Stage.YELLOWING: _stage_argument(args.yellow, defaults[Stage.YELLOWING].temperature, "yellow"),
            Stage.FIRST_CRACK: _stage_argument(args.fc, defaults[Stage.FIRST_CRACK].temperature, "fc"),
            Stage.DROP: RawCheckpointInput(*args.drop),
        }
    except ValueError as e:
        parser.error(str(e))

    options = {
        'export_csv': args.export_csv,
        'plot': args.plot,
        'save_plot': args.save_plot,
    }

    try:
        if args.remember:
            for stage in REMEMBERED_STAGE_KEYS:
                if raw_inputs[stage].temperature:
                    store.remember_temperature(stage, raw_inputs[stage].temperature)
            print(f"Remembered Yellowing/First Crack temperatures in {store.path}")

        result_df = analyze_profile(raw_inputs, options)

        if result_df is None:
            print("\nCalculation failed!")
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nCalculation interrupted by user.")
        sys.exit(1)
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

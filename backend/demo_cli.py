#!/usr/bin/env python3
"""
Clinical Timeline Engine - Interactive Demo CLI

Paste a clinical course (one or more notes) and see the full pipeline:
entities, causal timeline, treatment responses and functional trajectory.

Usage:
    python demo_cli.py                                # Interactive mode
    python demo_cli.py --file course.txt              # Analyze file
    python demo_cli.py --sample                       # Use sample course
    python demo_cli.py --sample --json                # Raw structured output
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from clinical_timeline.schemas.base import EntityCategory
from clinical_timeline.services.pipeline import PipelineResult, get_pipeline

# Notes in a file or paste are separated by a line holding only "---"
NOTE_SEPARATOR = "---"

# ============================================================================
# Sample Clinical Course
# ============================================================================

SAMPLE_NOTES = [
    """Admitted on 2024-03-01 with Hunt-Hess 3 SAH from a ruptured AComm aneurysm.
GCS 13 on admission. Started nimodipine and levetiracetam.""",
    """Underwent endovascular coiling on 2024-03-02. Coil embolization completed
without complication. TCD ordered daily.""",
    """POD#5 TCD velocities rising. POD#6 vasospasm, started induced hypertension.
GCS 11 on POD#6.""",
    """POD#8 vasospasm resolved. GCS 14. Patient is s/p coiling, doing well.
No further seizures. Discharged on 2024-03-20, GCS 15 at discharge.""",
]

# ============================================================================
# Display Functions
# ============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    END = '\033[0m'
    GRAY = '\033[90m'

def print_header(text: str, char: str = "="):
    """Print a formatted header."""
    width = 80
    print()
    print(f"{Colors.BOLD}{Colors.CYAN}{char * width}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.CYAN}{text.center(width)}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.CYAN}{char * width}{Colors.END}")

def print_subheader(text: str):
    """Print a formatted subheader."""
    print()
    print(f"{Colors.BOLD}{Colors.YELLOW}{'─' * 80}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.YELLOW}  {text}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.YELLOW}{'─' * 80}{Colors.END}")

def print_item(label: str, value: str, indent: int = 2):
    """Print a labeled item."""
    spaces = " " * indent
    print(f"{spaces}{Colors.GRAY}{label}:{Colors.END} {value}")

def print_success(text: str):
    """Print success message."""
    print(f"  {Colors.GREEN}✓{Colors.END} {text}")

def print_warning(text: str):
    """Print warning message."""
    print(f"  {Colors.YELLOW}!{Colors.END} {text}")

def print_error(text: str):
    """Print error message."""
    print(f"  {Colors.RED}✗{Colors.END} {text}")

# ============================================================================
# Analysis Functions
# ============================================================================

def split_notes(text: str) -> list[str]:
    """Split pasted or file text into notes on separator lines."""
    notes, current = [], []
    for line in text.splitlines():
        if line.strip() == NOTE_SEPARATOR:
            notes.append("\n".join(current))
            current = []
        else:
            current.append(line)
    notes.append("\n".join(current))
    return [note.strip() for note in notes if note.strip()]

def analyze_notes(notes: list[str], args: argparse.Namespace) -> PipelineResult:
    """Run the full pipeline with the command-line anchors."""
    reference_dates = {
        "admission": args.admission,
        "first_procedure": args.procedure,
    }
    return get_pipeline().run(
        notes,
        pathology_hint=args.pathology,
        reference_dates=reference_dates,
        prognostic_expectation=args.expectation,
    )

def display_results(result: PipelineResult):
    """Display pipeline results in formatted output."""
    quality = result.quality

    print_subheader("SUMMARY")
    print(f"""
  {Colors.BOLD}Extraction:{Colors.END}
    Mentions:     {quality['mention_count']}
    Entities:     {quality['entity_count']}
    References:   {quality['reference_count']} ({quality['standalone_reference_count']} standalone)

  {Colors.BOLD}Timeline:{Colors.END}
    Events:       {quality['event_count']}
    Dated share:  {quality['dated_event_share']:.0%}
    Issues:       {quality['issue_count']}
""")

    anchors = {k: v for k, v in result.reference_dates.to_dict().items() if v}
    if anchors:
        print_subheader("REFERENCE DATES")
        for name, value in anchors.items():
            print_item(name, value)

    if result.all_entities():
        print_subheader("ENTITIES")
        for category in EntityCategory:
            for entity in result.entities_of(category):
                when = entity.date.isoformat() if entity.date else "undated"
                extra = f" {Colors.GRAY}(standalone reference){Colors.END}" if entity.is_standalone_reference else ""
                print(f"  {Colors.CYAN}{category.value:16s}{Colors.END} {entity.canonical_name:30s} {when}{extra}")

    timeline = result.timeline
    if timeline.events:
        print_subheader("CAUSAL TIMELINE")
        for event in timeline.events:
            when = event.timestamp.isoformat() if event.timestamp else "undated   "
            color = Colors.RED if event.category.value == "COMPLICATION" else Colors.GREEN
            print(f"  {when}  {color}{event.category.value:12s}{Colors.END} {event.description}")
            for relationship in event.relationships:
                target = timeline.get_event(relationship.to_event_id)
                print(
                    f"      {Colors.BLUE}{relationship.type.value}{Colors.END} → "
                    f"{target.description if target else relationship.to_event_id} "
                    f"{Colors.GRAY}({relationship.time_window_label}, {relationship.confidence:.2f}){Colors.END}"
                )

    responses = result.treatment_responses
    if responses.responses:
        print_subheader("TREATMENT RESPONSES")
        for pair in responses.responses:
            line = (
                f"{pair.intervention.name:25s} {pair.classification.value:10s} "
                f"{pair.effectiveness.score:5.1f} ({pair.rating})"
            )
            if pair.effectiveness.score >= 60:
                print_success(line)
            else:
                print_warning(line)

    compliance = responses.protocol_compliance
    if compliance is not None and compliance.items:
        print_subheader(f"PROTOCOL COMPLIANCE ({compliance.pathology.value})")
        for item in compliance.items:
            text = f"{item.protocol:25s} {item.actual}"
            if item.compliant:
                print_success(text)
            else:
                print_error(text)
        print_item("Overall", f"{compliance.percentage}% ({compliance.overall})")

    evolution = result.functional_evolution
    if evolution.has_data:
        print_subheader("FUNCTIONAL TRAJECTORY")
        for sample in evolution.score_timeline:
            print(f"  {sample.timestamp.isoformat()}  {sample.score_type.upper():6s} {sample.raw_value:g}")
        trajectory = evolution.trajectory
        print_item("Pattern", trajectory.pattern.value)
        print_item("Trend", trajectory.trend.value)
        print_item("Rate", trajectory.rate.value if trajectory.rate else "n/a")
        if evolution.prognostic_comparison:
            print_item("Prognosis", evolution.prognostic_comparison["assessment"])

    if result.issues:
        print_subheader("ISSUES")
        for issue in result.issues:
            print_warning(f"[{issue.stage}] {issue.kind.value}: {issue.message}")

def run_and_display(notes: list[str], args: argparse.Namespace):
    result = analyze_notes(notes, args)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        display_results(result)

# ============================================================================
# Interactive Mode
# ============================================================================

def interactive_mode(args: argparse.Namespace):
    """Run interactive demo mode."""
    print_header("CLINICAL TIMELINE ENGINE - INTERACTIVE DEMO")
    print(f"""
  This tool turns clinical notes into a causal timeline.

  {Colors.BOLD}Commands:{Colors.END}
    paste     - Enter notes (separate notes with a '{NOTE_SEPARATOR}' line, end with two blank lines)
    sample    - Use the sample SAH course
    help      - Show this help
    quit      - Exit

""")

    while True:
        try:
            cmd = input(f"{Colors.BOLD}demo>{Colors.END} ").strip().lower()

            if cmd in ('quit', 'exit', 'q'):
                print("\nGoodbye!")
                break

            elif cmd == 'help':
                print(f"""
  Commands:
    paste   - Enter clinical notes ('{NOTE_SEPARATOR}' between notes, blank line twice to finish)
    sample  - Analyze the built-in sample course
    help    - Show this help message
    quit    - Exit the demo
""")

            elif cmd == 'sample':
                print_header("ANALYZING SAMPLE CLINICAL COURSE")
                run_and_display(SAMPLE_NOTES, args)

            elif cmd == 'paste':
                print("  Paste your clinical notes below (press Enter twice to finish):")
                print(f"  {Colors.GRAY}{'─' * 60}{Colors.END}")

                lines = []
                empty_count = 0
                while True:
                    line = input()
                    if line == "":
                        empty_count += 1
                        if empty_count >= 2:
                            break
                        lines.append(line)
                    else:
                        empty_count = 0
                        lines.append(line)

                notes = split_notes("\n".join(lines))
                if notes:
                    print_header("ANALYZING YOUR CLINICAL NOTES")
                    run_and_display(notes, args)
                else:
                    print("  No notes provided.")

            elif cmd:
                print(f"  Unknown command: {cmd}. Type 'help' for available commands.")

        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except EOFError:
            print("\nGoodbye!")
            break

# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Clinical Timeline Engine - Interactive Demo CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python demo_cli.py                                   # Interactive mode
  python demo_cli.py --sample --pathology SAH          # Analyze sample course
  python demo_cli.py --file course.txt --procedure 2024-03-02
  python demo_cli.py --sample --json                   # Structured output
"""
    )
    parser.add_argument('--file', '-f', help="Path to a notes file ('---' lines separate notes)")
    parser.add_argument('--sample', '-s', action='store_true', help='Use sample clinical course')
    parser.add_argument('--pathology', '-p', help='Pathology hint, e.g. SAH, TUMORS, TBI_CSDH')
    parser.add_argument('--admission', help='Admission date (HD#0 anchor)')
    parser.add_argument('--procedure', help='First procedure date (POD#0 anchor)')
    parser.add_argument('--expectation', type=float, help='Expected discharge status (0-100)')
    parser.add_argument('--json', action='store_true', help='Print the structured result as JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show pipeline logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.sample:
        if args.pathology is None:
            args.pathology = "SAH"
        if not args.json:
            print_header("ANALYZING SAMPLE CLINICAL COURSE")
        run_and_display(SAMPLE_NOTES, args)
    elif args.file:
        path = Path(args.file)
        if not path.exists():
            print(f"Error: File not found: {args.file}")
            sys.exit(1)

        notes = split_notes(path.read_text())
        if not args.json:
            print_header(f"ANALYZING: {path.name}")
        run_and_display(notes, args)
    else:
        interactive_mode(args)

if __name__ == "__main__":
    main()

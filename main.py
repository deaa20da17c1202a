#!/usr/bin/env python3
"""
TouchCRM - Interactive Menu Launcher
Run this file to reach the daily deck and the rest of the CLI through a menu.

Usage:
    python main.py
"""

import subprocess
import sys
import os

PYTHON = sys.executable
CRM = [PYTHON, "-m", "touchcrm.cli.main"]

# Project root on PYTHONPATH so 'touchcrm' package is importable
ENV = os.environ.copy()
ENV["PYTHONPATH"] = os.path.dirname(os.path.abspath(__file__))


def run(args: list[str]):
    """Run a CLI command and return to menu when done."""
    print()
    subprocess.run(CRM + args, env=ENV)
    print()
    input("  Press Enter to return to menu...")


def prompt(label: str, required: bool = True) -> str:
    """Prompt user for input. Returns empty string if optional and skipped."""
    while True:
        value = input(f"  {label}: ").strip()
        if value:
            return value
        if not required:
            return ""
        print("  (required - please enter a value)")


def prompt_optional(label: str) -> str:
    return prompt(f"{label} (optional, Enter to skip)", required=False)


def clear():
    os.system("cls" if os.name == "nt" else "clear")


# =============================================================================
# COMMAND HANDLERS
# =============================================================================

def deck_build():
    run(["deck", "build"])

def deck_status():
    run(["deck", "status"])

def deck_card():
    card = prompt("Card ID")
    action = prompt("activate / complete / skip / snooze")
    run(["deck", "card", card, action])

def contacts_list():
    args = ["contacts", "list"]
    name = prompt_optional("Filter by name")
    if name: args += ["--name", name]
    run(args)

def contacts_show():
    cid = prompt("Contact ID")
    run(["contacts", "show", cid])

def contacts_add():
    run(["contacts", "add"])

def contacts_touch():
    cid = prompt("Contact ID")
    kind = prompt("Type (sms_sent/call_made/email_sent/facetime_made/slack_sent/note_added)")
    args = ["contacts", "touch", cid, kind]
    card = prompt_optional("Deck card ID")
    if card: args += ["--card", card]
    run(args)

def contacts_cadence():
    cid = prompt("Contact ID")
    cadence = prompt("Cadence (days, weekly/biweekly/monthly/quarterly, or none)")
    run(["contacts", "cadence", cid, cadence])

def outcome_add():
    cid = prompt("Contact ID")
    text = prompt("What happened")
    args = ["outcomes", "add", text, "--contact", cid]
    sentiment = prompt_optional("Sentiment (positive/neutral/negative/mixed)")
    if sentiment: args += ["--sentiment", sentiment]
    run(args)

def score_show():
    cid = prompt("Contact ID")
    run(["score", "show", cid])

def rescore():
    run(["score", "rescore"])

def history_list():
    run(["history", "list"])

def streak():
    run(["history", "streak"])

def stats():
    days = prompt_optional("Days (default: 7)")
    args = ["history", "stats"]
    if days: args += ["--days", days]
    run(args)

def analytics():
    run(["analytics"])


# =============================================================================
# MENU LAYOUT
# =============================================================================

MENU = [
    ("TODAY", [
        ("Build / show today's deck",    deck_build),
        ("Deck progress",                deck_status),
        ("Update a card",                deck_card),
    ]),
    ("CONTACTS", [
        ("List contacts",                contacts_list),
        ("Show contact details",         contacts_show),
        ("Add new contact",              contacts_add),
        ("Log a touch",                  contacts_touch),
        ("Set cadence",                  contacts_cadence),
        ("Record an outcome",            outcome_add),
    ]),
    ("SCORES", [
        ("Show a contact's scores",      score_show),
        ("Rescore all contacts",         rescore),
        ("Relationship analytics",       analytics),
    ]),
    ("HISTORY", [
        ("Past decks",                   history_list),
        ("Streak",                       streak),
        ("Completion stats",             stats),
    ]),
]


def print_menu():
    clear()
    print("=" * 50)
    print("   TOUCHCRM")
    print("=" * 50)

    n = 1
    numbering = {}

    for section, commands in MENU:
        print(f"\n  {section}")
        print(f"  {'-' * len(section)}")
        for label, handler in commands:
            print(f"  {n:>2}.  {label}")
            numbering[n] = handler
            n += 1

    print("\n" + "=" * 50)
    print("   0.  Exit")
    print("=" * 50)
    return numbering


def main():
    while True:
        numbering = print_menu()

        try:
            choice = input("\n  Select a command: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\n  Goodbye!\n")
            break

        if choice == "0" or choice.lower() in ("q", "quit", "exit"):
            print("\n  Goodbye!\n")
            break

        try:
            n = int(choice)
            if n in numbering:
                clear()
                numbering[n]()
            else:
                print(f"\n  Invalid selection: {choice}")
                input("  Press Enter to continue...")
        except ValueError:
            print("\n  Please enter a number.")
            input("  Press Enter to continue...")


if __name__ == "__main__":
    main()

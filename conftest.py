#!/usr/bin/env python3
"""
Pytest configuration: shared fixtures for settings files, and concise exception output.

pytest_exception_interact prints where a non-assertion exception was raised, so that
errors coming out of header_cleaner are easy to tell apart from plain test failures.
"""

import sys
import json
import traceback
import pytest


def format_exception_details(exc_type, exc_value, exc_traceback):
    """
    Print the innermost frame outside site-packages for an exception.

    Returns True if details were printed, False for AssertionErrors.
    """
    if exc_type is AssertionError:
        return False

    tb_frames = traceback.extract_tb(exc_traceback)
    user_frame = None
    for frame in reversed(tb_frames):
        if '/site-packages/' not in frame.filename:
            user_frame = frame
            break

    location = f"{user_frame.filename}:{user_frame.lineno} (in {user_frame.name})" if user_frame else "unknown location"
    code_line = user_frame.line.strip() if user_frame and user_frame.line else ""

    # Print directly to stderr to bypass pytest's output capture
    print("\n==== EXCEPTION DETAILS ====", file=sys.__stderr__)
    print(f"Exception Type: {exc_type.__name__}", file=sys.__stderr__)
    print(f"Exception Message: {exc_value}", file=sys.__stderr__)
    print(f"Location: {location}", file=sys.__stderr__)
    if code_line:
        print(f"\n    {code_line}", file=sys.__stderr__)
    print("==== END EXCEPTION DETAILS ====\n", file=sys.__stderr__)
    return True


def pytest_exception_interact(node, call, report):
    if call.excinfo:
        format_exception_details(call.excinfo.type, call.excinfo.value, call.excinfo.tb)


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Run with an empty home and working directory so no real appsettings.json is found."""
    home = tmp_path / 'home'
    work = tmp_path / 'work'
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.chdir(work)
    return home, work


@pytest.fixture
def write_settings(tmp_path):
    """Return a function writing a settings dict (or raw text) to a JSON file."""
    def _write(data, name='appsettings.json', directory=None):
        path = (directory or tmp_path) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        text = data if isinstance(data, str) else json.dumps(data)
        path.write_text(text, encoding='utf-8')
        return path
    return _write

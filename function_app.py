"""
function_app.py – Azure Functions v2 entry point.

Uses the decorator-based programming model (v2) — no function.json needed.

Trigger  : Timer (cron "0 0 6 * * *" = every day at 06:00 UTC)
Settings : FIXERIO_KEY, TURSO_URL, TURSO_AUTH_TOKEN, ... are read from the
           Function App's application settings, exactly as pipeline.py
           reads them from the environment.

An aborted cycle raises, so the run shows up as failed in the Functions
monitor. A degraded cycle (replica sync or read-back failed) only logs.
"""

import logging

import azure.functions as func

from config import load_settings
from pipeline import execute

app = func.FunctionApp()


@app.timer_trigger(schedule="0 0 6 * * *", arg_name="timer", run_on_startup=False, use_monitor=True)
def sync_currency_rates(timer: func.TimerRequest) -> None:
    if timer.past_due:
        logging.warning("Timer is past due — running now to catch up.")

    logging.info("Currency rates sync triggered by timer.")

    report = execute(load_settings())

    if report.degraded:
        logging.warning("Currency rates sync degraded: %s", ", ".join(report.errors))
    else:
        logging.info("Currency rates sync complete.")

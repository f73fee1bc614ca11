#!/usr/bin/env python3
"""
COUNTER Bulk Harvester
======================

This script retrieves COUNTER journal reports (TR_J1 - TR_J4) from a SUSHI
endpoint for a list of customer accounts and writes one combined CSV, either
flat or formatted as a pivot table with institution subtotals.

Dependencies:
    - requests
    - pandas
    - python-dotenv
    - sushi_auth.py (requestor credentials)
    - counter_usage_reports.py (report normalization and CSV rendering)

Usage:
    python counter_harvest.py -t tr_j3 --begin-date 2025-01-01 --end-date 2025-06-30 -c 12345,67890
"""

import os
import sys
import json
import time
import logging
import argparse
from datetime import datetime
from functools import partial
from pathlib import Path
import requests
import pandas as pd
from dotenv import load_dotenv

from sushi_auth import SushiCredentials
from counter_usage_reports import (
    CURRENT_SCHEMA_VERSION,
    KNOWN_SCHEMA_VERSIONS,
    LEGACY_SCHEMA_VERSION,
    REPORT_TYPES,
    compute_summary,
    convert_to_csv,
    format_as_pivot,
    generate_filename,
    normalize_account,
)

# ============================================================================
# CONFIGURATION
# ============================================================================

# Load environment variables from .env file
load_dotenv()

# SUSHI endpoints, one per COUNTER release
API_BASE_URLS = {
    LEGACY_SCHEMA_VERSION: os.environ.get('SUSHI_BASE_URL', 'https://www.pnas.org/reports'),
    CURRENT_SCHEMA_VERSION: os.environ.get('SUSHI_R51_BASE_URL', 'https://www.pnas.org/r51/reports')
}

# Seconds to wait between accounts so we don't overwhelm the SUSHI server
REQUEST_DELAY = 0.1
REQUEST_TIMEOUT = 60

# File paths
OUTPUT_DIR = 'usage_reports'

logger = logging.getLogger(__name__)


class ReportFetchError(Exception):
    """Raised when the SUSHI server answers with a non-success status."""


def iso_date(value):
    """
    Argparse type for YYYY-MM-DD dates.

    Returns the zero-padded ISO string that goes into the SUSHI query.
    """
    value = value.strip()
    try:
        parsed = datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")
    return parsed.isoformat()


# Argparse Configuration
def parse_arguments(argv=None):
    """
    Parse command-line arguments for a harvest run.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description='Harvest COUNTER journal reports for many SUSHI customer accounts.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # TR_J3 for two customers, flat CSV
  python counter_harvest.py -t tr_j3 --begin-date 2025-01-01 --end-date 2025-06-30 -c 12345,67890

  # Release 5.1 TR_J4 for every account in a file, as a pivot table
  python counter_harvest.py -t tr_j4 -f 5.1 --begin-date 2024-07-01 --end-date 2025-06-30 -a accounts.csv --formatted

Report types: tr_j1, tr_j2, tr_j3, tr_j4
        """
    )

    parser.add_argument(
        '--report-type', '-t',
        type=str.lower,
        choices=sorted(REPORT_TYPES),
        default='tr_j3',
        help='COUNTER report to harvest. Default: tr_j3'
    )

    parser.add_argument(
        '--format', '-f',
        choices=KNOWN_SCHEMA_VERSIONS,
        default=None,
        help='COUNTER release of the endpoint ("5" or "5.1"). Default: detect from the report'
    )

    parser.add_argument(
        '--begin-date',
        type=iso_date,
        required=True,
        help='First day of the reporting period (YYYY-MM-DD)'
    )

    parser.add_argument(
        '--end-date',
        type=iso_date,
        required=True,
        help='Last day of the reporting period (YYYY-MM-DD)'
    )

    parser.add_argument(
        '--customers', '-c',
        type=str,
        default=None,
        help='Comma-separated list of customer IDs (e.g., "12345,67890")'
    )

    parser.add_argument(
        '--accounts-file', '-a',
        type=str,
        default=None,
        help='CSV file with a customer_id column (and optionally requestor_id), or one customer ID per line'
    )

    parser.add_argument(
        '--formatted',
        action='store_true',
        help='Write a pivot table with institution subtotals instead of a flat CSV'
    )

    parser.add_argument(
        '--output-dir', '-o',
        type=str,
        default=OUTPUT_DIR,
        help=f'Directory for the CSV and summary files. Default: {OUTPUT_DIR}'
    )

    parser.add_argument(
        '--delay',
        type=float,
        default=REQUEST_DELAY,
        help=f'Seconds to wait between accounts. Default: {REQUEST_DELAY}'
    )

    args = parser.parse_args(argv)

    if not args.customers and not args.accounts_file:
        parser.error('provide --customers or --accounts-file')

    if args.begin_date > args.end_date:
        parser.error(f'--begin-date {args.begin_date} is after --end-date {args.end_date}')

    return args

# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging():
    """Configure logging to both file and console."""
    log_dir = Path('logs')
    log_dir.mkdir(exist_ok=True)

    # Create a timestamped log file
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    log_file = log_dir / f'counter_harvest_{timestamp}.log'

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return log_file

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def load_accounts(filename):
    """
    Load customer accounts from a CSV file.

    The file either has a header with a customer_id column (requestor_id is
    optional) or is a bare list with one customer ID per line.

    Args:
        filename (str): Path to the accounts file

    Returns:
        list: Account dicts with 'customer_id' and, when given, 'requestor_id'
    """
    logger.info(f"Loading accounts from {filename}")
    df = pd.read_csv(filename, dtype=str, skipinitialspace=True)
    df.columns = [str(c).strip().lower() for c in df.columns]

    if 'customer_id' not in df.columns:
        # No header row: the first column holds the IDs
        df = pd.read_csv(filename, dtype=str, header=None).iloc[:, [0]].copy()
        df.columns = ['customer_id']

    df['customer_id'] = df['customer_id'].fillna('').str.strip()
    df = df[df['customer_id'] != ''].copy()

    columns = ['customer_id']
    if 'requestor_id' in df.columns:
        df['requestor_id'] = df['requestor_id'].fillna('').str.strip()
        columns.append('requestor_id')

    accounts = df[columns].to_dict('records')
    logger.info(f"Loaded {len(accounts)} accounts")
    return accounts


def parse_customer_list(customers):
    """Split a comma-separated customer ID string into account dicts."""
    return [
        {'customer_id': customer_id.strip()}
        for customer_id in customers.split(',')
        if customer_id.strip()
    ]


def build_api_url(request, base_urls=None):
    """
    Build the report URL for a request.

    Release 5.1 reports live under a separate base path on the SUSHI server.

    Args:
        request (dict): Request parameters ('format', 'report_type')
        base_urls (dict, optional): Base URL per release

    Returns:
        str: Report endpoint without query string
    """
    base_urls = base_urls or API_BASE_URLS
    if request.get('format') == CURRENT_SCHEMA_VERSION:
        base_url = base_urls[CURRENT_SCHEMA_VERSION]
    else:
        base_url = base_urls[LEGACY_SCHEMA_VERSION]

    return f"{base_url.rstrip('/')}/{request['report_type'].lower()}"


def fetch_report(request, account, credentials=None, session=None, timeout=REQUEST_TIMEOUT):
    """
    Request one customer's report from the SUSHI server.

    Args:
        request (dict): Request parameters
        account (dict): Account with 'customer_id' and 'requestor_id'
        credentials (SushiCredentials, optional): Fills in the requestor ID
                                                  and API key
        session (requests.Session, optional): Session to reuse
        timeout (int): Request timeout in seconds

    Returns:
        dict: Parsed JSON report

    Raises:
        ReportFetchError: If the server does not answer with a 2xx status
    """
    endpoint = build_api_url(request)

    if credentials:
        params = credentials.get_query_params(account['customer_id'], account.get('requestor_id'))
    else:
        params = {
            'requestor_id': account.get('requestor_id', ''),
            'customer_id': account['customer_id']
        }
    params['begin_date'] = request['begin_date']
    params['end_date'] = request['end_date']

    logger.debug(f"API Request: {endpoint}")
    logger.debug(f"Parameters: {params}")

    http = session or requests
    response = http.get(endpoint, params=params, timeout=timeout)

    if not response.ok:
        raise ReportFetchError(f"API returned {response.status_code}")

    return response.json()


def calculate_eta(start_time, processed, total, now=None):
    """
    Estimate the time left in a run from the average time per account.

    Args:
        start_time (float): time.time() when the run started
        processed (int): Accounts started so far
        total (int): Accounts in the run
        now (float, optional): Current time, defaults to time.time()

    Returns:
        str: e.g. '12 seconds' or '3 minutes'
    """
    now = time.time() if now is None else now
    elapsed = now - start_time
    average_time = elapsed / processed if processed else 0
    eta = (total - processed) * average_time

    if eta < 60:
        return f"{round(eta)} seconds"
    return f"{round(eta / 60)} minutes"

# ============================================================================
# MAIN PROCESSING FUNCTIONS
# ============================================================================

def harvest_accounts(request, accounts, fetch=fetch_report, progress_callback=None, delay=REQUEST_DELAY):
    """
    Harvest and combine reports for every account, one at a time.

    Before each account a progress event is passed to progress_callback.
    A failed account contributes a single ERROR row and the run carries on.

    Args:
        request (dict): Request parameters ('report_type', 'format',
                        'begin_date', 'end_date', 'formatted')
        accounts (list): Account dicts
        fetch (callable): fetch(request, account) -> parsed JSON report
        progress_callback (callable, optional): Receives progress event dicts
        delay (float): Seconds to wait between accounts

    Returns:
        dict: Completion event with the rendered 'csv', 'filename', account
              counts and 'summary'
    """
    results = []
    successful = 0
    failed = 0
    total_accounts = len(accounts)
    start_time = time.time()

    for i, account in enumerate(accounts):
        if progress_callback:
            progress_callback({
                'type': 'progress',
                'current': i + 1,
                'total': total_accounts,
                'percentage': round((i + 1) / total_accounts * 100),
                'currentAccount': account.get('customer_id'),
                'successful': successful,
                'failed': failed,
                'estimatedTimeRemaining': calculate_eta(start_time, i + 1, total_accounts)
            })

        rows, success = normalize_account(request, account, fetch)
        results.extend(rows)
        if success:
            successful += 1
        else:
            failed += 1

        if delay and i < total_accounts - 1:
            time.sleep(delay)

    if request.get('formatted'):
        csv_text = format_as_pivot(results, request)
    else:
        csv_text = convert_to_csv(results, request)

    return {
        'type': 'complete',
        'csv': csv_text,
        'filename': generate_filename(request),
        'successful': successful,
        'failed': failed,
        'total': total_accounts,
        'summary': compute_summary(results)
    }


def log_progress(event):
    """Progress callback for the command line."""
    logger.info(
        f"[{event['current']}/{event['total']}] {event['percentage']}% - "
        f"customer {event['currentAccount']} "
        f"(ok: {event['successful']}, failed: {event['failed']}, "
        f"ETA: {event['estimatedTimeRemaining']})"
    )


def save_results(result, output_dir):
    """
    Write the CSV and a JSON run summary.

    Args:
        result (dict): Completion event from harvest_accounts
        output_dir (str | Path): Output directory

    Returns:
        Path: Path to the CSV file
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    csv_path = output_path / f"{result['filename']}.csv"
    with open(csv_path, 'w', newline='', encoding='utf-8') as csvfile:
        csvfile.write(result['csv'])

    summary_path = output_path / f"{result['filename']}_summary.json"
    with open(summary_path, 'w', encoding='utf-8') as f:
        json.dump({k: v for k, v in result.items() if k != 'csv'}, f, indent=2)

    logger.info(f"Generated: {csv_path}")
    return csv_path


def main(argv=None):
    """Main execution function."""
    args = parse_arguments(argv)
    log_file = setup_logging()

    logger.info("\n" + "="*60)
    logger.info("COUNTER Bulk Harvester")
    logger.info("="*60)
    logger.info(f"Log file: {log_file}")
    logger.info(f"Report: {REPORT_TYPES[args.report_type]}")
    logger.info(f"Release: {args.format or 'auto-detect'}")
    logger.info(f"Period: {args.begin_date} to {args.end_date}")
    logger.info(f"Output: {'pivot table' if args.formatted else 'flat CSV'}")

    # Step 1: Load credentials
    try:
        credentials = SushiCredentials()
    except ValueError as e:
        logger.error(f"Authentication error: {e}")
        logger.error("Please check your .env file has SUSHI_REQUESTOR_ID set")
        sys.exit(1)

    # Step 2: Collect accounts
    accounts = []
    if args.customers:
        accounts.extend(parse_customer_list(args.customers))
    if args.accounts_file:
        try:
            accounts.extend(load_accounts(args.accounts_file))
        except FileNotFoundError:
            logger.error(f"Accounts file not found: {args.accounts_file}")
            sys.exit(1)
        except Exception as e:
            logger.error(f"Error loading accounts: {e}")
            sys.exit(1)

    accounts = [credentials.apply_to_account(account) for account in accounts]
    if not accounts:
        logger.warning("No accounts to process. Exiting.")
        return

    request = {
        'report_type': args.report_type,
        'format': args.format,
        'begin_date': args.begin_date,
        'end_date': args.end_date,
        'formatted': args.formatted
    }

    # Step 3: Harvest
    logger.info(f"\nHarvesting {len(accounts)} accounts...")
    with requests.Session() as session:
        fetch = partial(fetch_report, credentials=credentials, session=session)
        result = harvest_accounts(
            request,
            accounts,
            fetch=fetch,
            progress_callback=log_progress,
            delay=args.delay
        )

    # Step 4: Save
    save_results(result, args.output_dir)

    summary = result['summary']
    logger.info("\n" + "="*60)
    logger.info("SUMMARY")
    logger.info("="*60)
    logger.info(f"Accounts: {result['total']} (successful: {result['successful']}, failed: {result['failed']})")
    logger.info(f"Total usage: {summary['totalUsage']}")
    logger.info(f"Platforms: {summary['uniquePlatforms']}")
    logger.info(f"Metric types: {', '.join(summary['metricTypes'])}")
    logger.info("="*60)

# ============================================================================
# SCRIPT ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("\n\nScript interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        logger.exception("Full traceback:")
        sys.exit(1)

"""
COUNTER Usage Report Normalizer
===============================

This module turns COUNTER (SUSHI) journal reports into flat rows and renders
them as CSV, either one row per title/metric or as an indented pivot table
with institution subtotals.

Both JSON shapes served by SUSHI endpoints are handled:
    - Release 5   (legacy):  Item_ID lists, Performance periods with Instances
    - Release 5.1 (current): Item_ID objects, Attribute_Performance blocks

Nothing in here talks to the network. Payloads come from counter_harvest.py
(or any other caller) one account at a time.
"""

import csv
import io
import logging
from datetime import date, datetime, timezone

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

LEGACY_SCHEMA_VERSION = '5'
CURRENT_SCHEMA_VERSION = '5.1'
KNOWN_SCHEMA_VERSIONS = (LEGACY_SCHEMA_VERSION, CURRENT_SCHEMA_VERSION)

# Journal reports we know how to harvest
REPORT_TYPES = {
    'tr_j1': 'TR_J1 - Journal Requests',
    'tr_j2': 'TR_J2 - Journal Access Denied',
    'tr_j3': 'TR_J3 - Journal Usage by Access Type',
    'tr_j4': 'TR_J4 - Journal Requests by YOP'
}
ACCESS_TYPE_REPORT = 'tr_j3'
YOP_REPORT = 'tr_j4'

FILENAME_PREFIX = 'bulk_counter'

# Sentinel metric types for placeholder rows
ERROR_METRIC = 'ERROR'
NO_DATA_METRIC = 'No Data'
SENTINEL_METRICS = (ERROR_METRIC, NO_DATA_METRIC)

MONTH_ABBREVIATIONS = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
                       'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']

# Identity columns, in output order
BASE_COLUMNS = [
    'Institution_Name',
    'Institution_ID',
    'Title',
    'Publisher',
    'Publisher_ID',
    'Platform',
    'DOI',
    'Proprietary_ID',
    'Print_ISSN',
    'Online_ISSN',
    'URI'
]

# Pivot ordering
METRIC_ORDER = [
    'Total_Item_Investigations',
    'Total_Item_Requests',
    'Unique_Item_Investigations',
    'Unique_Item_Requests'
]
ACCESS_TYPE_ORDER = ['Controlled', 'Free_To_Read', 'Open']
UNKNOWN_BUCKET = 'Unknown'
GRAND_TOTAL_LABEL = 'Grand Total'
ERRORS_MARKER = '--- Errors ---'

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _to_date(value):
    """Accept a date, datetime or ISO 'YYYY-MM-DD' string and return a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip()[:10], '%Y-%m-%d').date()


def _to_int(value):
    """Lenient count parsing: numbers and numeric strings truncate, anything else is 0."""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _to_text(value):
    if value is None:
        return ''
    return str(value)


def _join_lines(buffer):
    # csv.writer terminates every row; output is newline-joined without a trailing one
    text = buffer.getvalue()
    if text.endswith('\n'):
        text = text[:-1]
    return text


def format_month_key(year, month):
    """
    Build the display label for a calendar month.

    Args:
        year (int): Four-digit year
        month (int): Month number, 1-12

    Returns:
        str: Label such as 'Jan-25'
    """
    return f"{MONTH_ABBREVIATIONS[month - 1]}-{year % 100:02d}"


def convert_api_month(api_month):
    """
    Convert a 5.1 performance key ("2025-01") to a display label ("Jan-25").

    Returns an empty string when the key does not look like YYYY-MM.
    """
    try:
        year, month = str(api_month).split('-')[:2]
        year, month = int(year), int(month)
    except ValueError:
        return ''
    if not 1 <= month <= 12:
        return ''
    return format_month_key(year, month)

# ============================================================================
# MONTH RANGE
# ============================================================================

def get_month_columns(begin_date, end_date):
    """
    Get the month labels covered by a query period.

    Walks one calendar month at a time from the first of the begin month
    through the first of the end month, so the result is chronological and
    has no duplicates. An inverted range gives an empty list.

    Args:
        begin_date (date | str): Start of the reporting period
        end_date (date | str): End of the reporting period

    Returns:
        list: Month labels, e.g. ['Jan-25', 'Feb-25', 'Mar-25']
    """
    begin = _to_date(begin_date)
    end = _to_date(end_date)

    months = []
    year, month = begin.year, begin.month
    while (year, month) <= (end.year, end.month):
        months.append(format_month_key(year, month))
        month += 1
        if month > 12:
            month = 1
            year += 1

    return months

# ============================================================================
# REPORT LAYOUT
# ============================================================================

def build_report_layout(request):
    """
    Decide the column set for a run.

    Access_Type is only reported for TR_J3 and YOP only for TR_J4. The
    decision is made once here and every row builder and renderer reads it
    from the layout.

    Args:
        request (dict): Request parameters with 'report_type', 'begin_date'
                        and 'end_date'

    Returns:
        dict: {
            'report_type': lowercased report type,
            'month_columns': [...],
            'include_yop': bool,
            'include_access_type': bool,
            'columns': full flat CSV header
        }
    """
    report_type = _to_text(request.get('report_type')).strip().lower()
    month_columns = get_month_columns(request['begin_date'], request['end_date'])

    include_yop = report_type == YOP_REPORT
    include_access_type = report_type == ACCESS_TYPE_REPORT

    # YOP goes before Access_Type
    columns = list(BASE_COLUMNS)
    if include_yop:
        columns.append('YOP')
    if include_access_type:
        columns.append('Access_Type')
    columns.extend(['Metric_Type', 'Reporting_Period_Total'])
    columns.extend(month_columns)

    return {
        'report_type': report_type,
        'month_columns': month_columns,
        'include_yop': include_yop,
        'include_access_type': include_access_type,
        'columns': columns
    }


def _build_row(layout, identity, metric_type, total, monthly_values,
               access_type='', yop=''):
    """Assemble one normalized row on the run's fixed column set."""
    row = {column: _to_text(identity.get(column, '')) for column in BASE_COLUMNS}

    if layout['include_yop']:
        row['YOP'] = _to_text(yop)
    if layout['include_access_type']:
        row['Access_Type'] = _to_text(access_type)

    row['Metric_Type'] = metric_type
    row['Reporting_Period_Total'] = total

    for month in layout['month_columns']:
        row[month] = monthly_values.get(month, 0)

    return row

# ============================================================================
# SCHEMA DETECTION
# ============================================================================

def is_current_schema(request, report_items):
    """
    Decide whether a payload uses the 5.1 layout.

    A "5.1" hint is decisive. Anything else, "5" included, falls back to
    checking the first report item for an Attribute_Performance block.

    Args:
        request (dict): Request parameters, 'format' is the version hint
        report_items (list): The payload's Report_Items

    Returns:
        bool: True for 5.1, False for 5
    """
    hint = _to_text(request.get('format')).strip()

    if hint == CURRENT_SCHEMA_VERSION:
        return True
    if report_items and isinstance(report_items[0], dict):
        return bool(report_items[0].get('Attribute_Performance'))
    return False

# ============================================================================
# FIELD EXTRACTION
# ============================================================================

def extract_identifier(container, id_type):
    """
    Read one identifier from an ID container in either release's shape.

    Release 5 sends a list of {"Type": ..., "Value": ...} entries; the first
    entry with a matching Type wins. Release 5.1 sends an object keyed by
    type, where a value may itself be a list (first element is used).

    Args:
        container (list | dict): Item_ID, Publisher_ID or Institution_ID
        id_type (str): Identifier type, e.g. 'DOI' or 'Proprietary'

    Returns:
        str: The identifier, or '' when absent or malformed
    """
    if isinstance(container, list):
        for entry in container:
            if isinstance(entry, dict) and entry.get('Type') == id_type:
                return _to_text(entry.get('Value'))
        return ''

    if isinstance(container, dict):
        value = container.get(id_type)
        if isinstance(value, list):
            value = value[0] if value else ''
        if isinstance(value, (dict, list)):
            return ''
        return _to_text(value)

    return ''


def get_institution_id(json_data):
    """Proprietary institution ID from the report header."""
    header = json_data.get('Report_Header') or {}
    if not isinstance(header, dict):
        return ''
    return extract_identifier(header.get('Institution_ID'), 'Proprietary')


def get_institution_name(json_data):
    header = json_data.get('Report_Header') or {}
    if not isinstance(header, dict):
        return ''
    return _to_text(header.get('Institution_Name'))


def extract_item_data(item):
    """
    Pull the identifying fields out of a report item.

    Args:
        item (dict): One entry of Report_Items

    Returns:
        dict: Identity fields keyed by output column (without the
              institution columns, which come from the header)
    """
    item_ids = item.get('Item_ID') or {}
    publisher_ids = item.get('Publisher_ID') or {}

    return {
        'Title': _to_text(item.get('Title')),
        'Publisher': _to_text(item.get('Publisher')),
        'Publisher_ID': extract_identifier(publisher_ids, 'Proprietary'),
        'Platform': _to_text(item.get('Platform')),
        'DOI': extract_identifier(item_ids, 'DOI'),
        'Proprietary_ID': extract_identifier(item_ids, 'Proprietary'),
        'Print_ISSN': extract_identifier(item_ids, 'Print_ISSN'),
        'Online_ISSN': extract_identifier(item_ids, 'Online_ISSN'),
        # SUSHI servers don't populate URI for journal reports
        'URI': ''
    }

# ============================================================================
# ROW NORMALIZATION
# ============================================================================

def _current_schema_rows(report_items, layout, header_fields):
    """Rows for 5.1 payloads: one per item / attribute block / metric type."""
    rows = []

    for item in report_items:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed report item: {item!r}")
            continue

        identity = dict(header_fields, **extract_item_data(item))

        for attr_perf in item.get('Attribute_Performance') or []:
            if not isinstance(attr_perf, dict):
                continue
            access_type = attr_perf.get('Access_Type') or ''
            yop = attr_perf.get('YOP') or ''
            performance = attr_perf.get('Performance') or {}
            if not isinstance(performance, dict):
                continue

            for metric_type, monthly_data in performance.items():
                monthly_values = {}
                total = 0

                if isinstance(monthly_data, dict):
                    for api_month, count in monthly_data.items():
                        month_value = _to_int(count)
                        total += month_value
                        month_key = convert_api_month(api_month)
                        if month_key:
                            monthly_values[month_key] = monthly_values.get(month_key, 0) + month_value

                rows.append(_build_row(
                    layout, identity, metric_type, total, monthly_values,
                    access_type=access_type, yop=yop
                ))

    return rows


def _legacy_schema_rows(report_items, layout, header_fields):
    """Rows for release 5 payloads: one per item / metric type."""
    rows = []

    for item in report_items:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed report item: {item!r}")
            continue

        identity = dict(header_fields, **extract_item_data(item))
        access_type = item.get('Access_Type') or ''
        yop = item.get('YOP') or item.get('Year_of_Publication') or ''

        # First pass: collect monthly counts per metric type across all periods
        metric_data = {}
        for performance in item.get('Performance') or []:
            if not isinstance(performance, dict):
                continue
            period = performance.get('Period')
            if not isinstance(period, dict) or not period.get('Begin_Date'):
                continue

            try:
                begin = _to_date(period['Begin_Date'])
            except ValueError:
                logger.warning(f"Skipping period with unreadable Begin_Date: {period['Begin_Date']!r}")
                continue
            month_key = format_month_key(begin.year, begin.month)

            for instance in performance.get('Instance') or []:
                if not isinstance(instance, dict):
                    continue
                metric_type = instance.get('Metric_Type')
                if not metric_type:
                    continue
                count = _to_int(instance.get('Count'))

                if metric_type not in metric_data:
                    metric_data[metric_type] = {'monthly_values': {}, 'total': 0}

                monthly_values = metric_data[metric_type]['monthly_values']
                monthly_values[month_key] = monthly_values.get(month_key, 0) + count
                metric_data[metric_type]['total'] += count

        # Second pass: one row per metric type with all monthly data
        for metric_type, data in metric_data.items():
            rows.append(_build_row(
                layout, identity, metric_type, data['total'], data['monthly_values'],
                access_type=access_type, yop=yop
            ))

    return rows


def create_no_data_row(request, institution_name='', institution_id='', layout=None):
    """Placeholder row for a successful report with no Report_Items."""
    layout = layout or build_report_layout(request)
    identity = {
        'Institution_Name': institution_name or NO_DATA_METRIC,
        'Institution_ID': institution_id,
        'Title': 'No usage data for this period'
    }
    return _build_row(layout, identity, NO_DATA_METRIC, 0, {})


def create_error_row(error, request, account, layout=None):
    """
    Placeholder row for an account whose report could not be fetched.

    Args:
        error (Exception | str): What went wrong
        request (dict): Request parameters
        account (dict): The account, 'customer_id' identifies it

    Returns:
        dict: Row tagged with Metric_Type 'ERROR'
    """
    layout = layout or build_report_layout(request)
    identity = {
        'Institution_Name': ERROR_METRIC,
        'Institution_ID': _to_text(account.get('customer_id')),
        'Title': f"Failed: {error}"
    }
    return _build_row(layout, identity, ERROR_METRIC, 0, {})


def normalize_report(json_data, request, account=None):
    """
    Normalize one fetched report into flat rows.

    Args:
        json_data (dict): Parsed SUSHI report
        request (dict): Request parameters
        account (dict, optional): Account the report belongs to

    Returns:
        tuple: (rows, success) where rows is a list of dicts and success
               is True for any report that came back, with or without data
    """
    if not isinstance(json_data, dict):
        json_data = {}

    layout = build_report_layout(request)
    header_fields = {
        'Institution_Name': get_institution_name(json_data),
        'Institution_ID': get_institution_id(json_data)
    }

    report_items = json_data.get('Report_Items') or []
    if not isinstance(report_items, list):
        report_items = []

    if not report_items:
        customer = (account or {}).get('customer_id', '')
        logger.info(f"No report items for account {customer}")
        row = create_no_data_row(
            request,
            institution_name=header_fields['Institution_Name'],
            institution_id=header_fields['Institution_ID'],
            layout=layout
        )
        return [row], True

    current = is_current_schema(request, report_items)
    logger.debug(
        f"Version detection: format={request.get('format')}, "
        f"is_version_51={current}, items={len(report_items)}"
    )

    if current:
        rows = _current_schema_rows(report_items, layout, header_fields)
    else:
        rows = _legacy_schema_rows(report_items, layout, header_fields)

    return rows, True


def normalize_account(request, account, fetch):
    """
    Fetch and normalize the report for one account.

    Any exception from the fetch (or a non-dict payload) becomes a single
    ERROR row so the run can carry on with the next account.

    Args:
        request (dict): Request parameters
        account (dict): Account with 'customer_id' (and usually 'requestor_id')
        fetch (callable): fetch(request, account) -> parsed JSON payload

    Returns:
        tuple: (rows, success)
    """
    try:
        json_data = fetch(request, account)
    except Exception as e:
        logger.error(f"Error for {account.get('customer_id')}: {e}")
        return [create_error_row(e, request, account)], False

    return normalize_report(json_data, request, account)

# ============================================================================
# FLAT CSV
# ============================================================================

def convert_to_csv(rows, request):
    """
    Render normalized rows as a flat CSV with every field quoted.

    Args:
        rows (list): Normalized rows from every account
        request (dict): Request parameters

    Returns:
        str: CSV text, or '' when there are no rows
    """
    if not rows:
        return ''

    headers = build_report_layout(request)['columns']

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_to_text(row.get(h)) for h in headers])

    return _join_lines(buffer)

# ============================================================================
# PIVOT TABLE
# ============================================================================

def _empty_totals(month_columns):
    totals = {'total': 0}
    for month in month_columns:
        totals[month] = 0
    return totals


def _add_row(totals, row, month_columns):
    totals['total'] += _to_int(row.get('Reporting_Period_Total'))
    for month in month_columns:
        totals[month] += _to_int(row.get(month))


def _add_totals(totals, other, month_columns):
    totals['total'] += other['total']
    for month in month_columns:
        totals[month] += other[month]


def _pivot_row(label, level, totals, month_columns):
    return {
        'label': label,
        'level': level,
        'total': totals['total'],
        'months': [totals[m] for m in month_columns]
    }


def _ordered_metrics(metric_types):
    """Fixed COUNTER metric order first, anything else alphabetically after."""
    ordered = [m for m in METRIC_ORDER if m in metric_types]
    ordered.extend(sorted(m for m in metric_types if m not in METRIC_ORDER))
    return ordered


def _access_type_key(row):
    access_type = _to_text(row.get('Access_Type')).strip()
    return access_type if access_type in ACCESS_TYPE_ORDER else UNKNOWN_BUCKET


def _yop_key(row):
    yop = _to_text(row.get('YOP')).strip()
    return yop if yop.isdecimal() else UNKNOWN_BUCKET


def _ordered_access_types(keys):
    ordered = [a for a in ACCESS_TYPE_ORDER if a in keys]
    if UNKNOWN_BUCKET in keys:
        ordered.append(UNKNOWN_BUCKET)
    return ordered


def _ordered_yops(keys):
    ordered = sorted((k for k in keys if k != UNKNOWN_BUCKET), key=int, reverse=True)
    if UNKNOWN_BUCKET in keys:
        ordered.append(UNKNOWN_BUCKET)
    return ordered


def _group_by_metric(rows, month_columns):
    grouped = {}
    for row in rows:
        metric_type = _to_text(row.get('Metric_Type'))
        if metric_type not in grouped:
            grouped[metric_type] = _empty_totals(month_columns)
        _add_row(grouped[metric_type], row, month_columns)
    return grouped


def _metric_rows(grouped, level, month_columns, parent_totals):
    """Emit metric rows in order and roll them into parent_totals."""
    pivot_rows = []
    for metric_type in _ordered_metrics(grouped):
        _add_totals(parent_totals, grouped[metric_type], month_columns)
        pivot_rows.append(_pivot_row(metric_type, level, grouped[metric_type], month_columns))
    return pivot_rows


def _institution_rows(inst_name, inst_rows, layout):
    """Pivot rows for one institution, header row first."""
    month_columns = layout['month_columns']
    inst_totals = _empty_totals(month_columns)
    child_rows = []

    if layout['include_access_type'] or layout['include_yop']:
        if layout['include_access_type']:
            key_func, order_func = _access_type_key, _ordered_access_types
        else:
            key_func, order_func = _yop_key, _ordered_yops

        buckets = {}
        for row in inst_rows:
            buckets.setdefault(key_func(row), []).append(row)

        for bucket in order_func(buckets):
            bucket_totals = _empty_totals(month_columns)
            grouped = _group_by_metric(buckets[bucket], month_columns)
            metric_rows = _metric_rows(grouped, 2, month_columns, bucket_totals)

            _add_totals(inst_totals, bucket_totals, month_columns)
            child_rows.append(_pivot_row(bucket, 1, bucket_totals, month_columns))
            child_rows.extend(metric_rows)
    else:
        # TR_J1, TR_J2 and anything unrecognized: metric types only
        grouped = _group_by_metric(inst_rows, month_columns)
        child_rows = _metric_rows(grouped, 1, month_columns, inst_totals)

    return [_pivot_row(inst_name, 0, inst_totals, month_columns)] + child_rows, inst_totals


def split_error_rows(rows):
    """
    Separate usage rows from ERROR / No Data placeholders.

    Returns:
        tuple: (valid_rows, error_rows), each in input order
    """
    valid_rows = []
    error_rows = []
    for row in rows:
        if row.get('Metric_Type') in SENTINEL_METRICS:
            error_rows.append(row)
        else:
            valid_rows.append(row)
    return valid_rows, error_rows


def build_pivot_rows(rows, request):
    """
    Aggregate normalized rows into the nested pivot structure.

    Institutions come out alphabetically, each with its subtotal row followed
    by access type (TR_J3) or YOP (TR_J4) subtotals and metric rows, then a
    Grand Total row. ERROR / No Data rows are left out.

    Metric rows follow METRIC_ORDER. Metric types outside it, such as
    TR_J2's No_License and Limit_Exceeded, come after in alphabetical order
    so each subtotal still equals the sum of the rows beneath it.

    Args:
        rows (list): Normalized rows
        request (dict): Request parameters

    Returns:
        list: Pivot rows as dicts with 'label', 'level', 'total', 'months'
    """
    layout = build_report_layout(request)
    month_columns = layout['month_columns']
    valid_rows, _ = split_error_rows(rows)

    by_institution = {}
    for row in valid_rows:
        by_institution.setdefault(_to_text(row.get('Institution_Name')), []).append(row)

    pivot_rows = []
    grand_totals = _empty_totals(month_columns)

    for inst_name in sorted(by_institution):
        inst_pivot_rows, inst_totals = _institution_rows(inst_name, by_institution[inst_name], layout)
        pivot_rows.extend(inst_pivot_rows)
        _add_totals(grand_totals, inst_totals, month_columns)

    pivot_rows.append(_pivot_row(GRAND_TOTAL_LABEL, 0, grand_totals, month_columns))
    return pivot_rows


def format_as_pivot(rows, request):
    """
    Render normalized rows as an indented pivot CSV.

    Labels are quoted and indented two spaces per level; totals and monthly
    values are written as bare numbers. Failed and empty accounts are listed
    after a '--- Errors ---' marker.

    Args:
        rows (list): Normalized rows
        request (dict): Request parameters

    Returns:
        str: CSV text
    """
    month_columns = build_report_layout(request)['month_columns']
    _, error_rows = split_error_rows(rows)

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator='\n')
    writer.writerow(['', 'Reporting_Period_Total'] + month_columns)

    for pivot_row in build_pivot_rows(rows, request):
        indent = '  ' * pivot_row['level']
        writer.writerow([f"{indent}{pivot_row['label']}", pivot_row['total']] + pivot_row['months'])

    if error_rows:
        writer.writerow([])
        writer.writerow([ERRORS_MARKER])
        for row in error_rows:
            writer.writerow([_to_text(row.get('Institution_ID')), _to_text(row.get('Title'))])

    return _join_lines(buffer)

# ============================================================================
# SUMMARY
# ============================================================================

def compute_summary(rows):
    """
    Headline numbers for a finished run.

    Returns:
        dict: {
            'totalUsage': sum of Reporting_Period_Total,
            'uniquePlatforms': number of distinct platforms,
            'metricTypes': up to five metric types seen, in order
        }
    """
    total_usage = sum(
        _to_int(row.get('Reporting_Period_Total'))
        for row in rows
        if row.get('Title') != ERROR_METRIC
    )

    platforms = {row.get('Platform') for row in rows if row.get('Platform')}

    metric_types = []
    for row in rows:
        metric_type = row.get('Metric_Type')
        if metric_type and metric_type not in SENTINEL_METRICS and metric_type not in metric_types:
            metric_types.append(metric_type)

    return {
        'totalUsage': total_usage,
        'uniquePlatforms': len(platforms),
        'metricTypes': metric_types[:5]
    }


def generate_filename(request, run_date=None):
    """
    Output filename (without extension) for a run.

    Format: bulk_counter_{version}-{report_type}_{YYYYMMDD}[_formatted]

    Args:
        request (dict): Request parameters
        run_date (date, optional): Defaults to today's UTC date

    Returns:
        str: e.g. 'bulk_counter_5.1-tr_j3_20250101_formatted'
    """
    version = _to_text(request.get('format')).strip() or LEGACY_SCHEMA_VERSION
    report_type = _to_text(request.get('report_type')).strip().lower()
    run_date = run_date or datetime.now(timezone.utc).date()

    filename = f"{FILENAME_PREFIX}_{version}-{report_type}_{run_date.strftime('%Y%m%d')}"
    if request.get('formatted'):
        filename += '_formatted'
    return filename

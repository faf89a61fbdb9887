#!/usr/bin/env python3
"""
CI metrics aggregation

Folds project pipeline bundles into the MetricsResult consumed by the charts:
totals, a six-bucket status histogram, per-project build counts and minutes,
and a time series bucketed by calendar day (or by month for the year range).
"""

import logging

from dateutil import parser as date_parser

from ci_analytics.date_range import normalize_time_range

logger = logging.getLogger(__name__)

# Fixed histogram buckets; any other GitLab status lands in 'other'
STATUS_BUCKETS = ('success', 'failed', 'canceled', 'running', 'pending', 'other')

UNKNOWN_PERIOD = 'unknown'

# strftime format of the period key per time range
PERIOD_FORMATS = {
    'week': '%Y-%m-%d',
    'month': '%Y-%m-%d',
    'year': '%Y-%m',
}


def empty_metrics():
    return {
        'totalBuilds': 0,
        'totalMinutes': 0,
        'buildsPerProject': [],
        'minutesPerProject': [],
        'buildsByStatus': {status: 0 for status in STATUS_BUCKETS},
        'timeSeriesData': [],
    }


def status_bucket(status):
    if status in STATUS_BUCKETS:
        return status
    return 'other'


def _parse_timestamp(value):
    if not value or not isinstance(value, str):
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, OverflowError):
        logger.debug(f"Unparseable pipeline timestamp: {value!r}")
        return None


def pipeline_day(pipeline):
    """YYYY-MM-DD of a pipeline's created_at, or 'unknown'"""
    created = _parse_timestamp(pipeline.get('created_at'))
    return created.strftime('%Y-%m-%d') if created else UNKNOWN_PERIOD


def _period_sort_key(entry):
    # 'unknown' sorts after every real date
    return (entry['period'] == UNKNOWN_PERIOD, entry['period'])


def group_time_series_data(time_series, time_range):
    """Re-bucket a daily series for the selected time range

    'day' is passed through at daily granularity (there is no hourly
    bucketing). 'week' and 'month' keep one bucket per date, and 'year'
    merges days into YYYY-MM buckets. Input is expected sorted ascending;
    output keeps first-seen order of the merged buckets.
    """
    time_range = normalize_time_range(time_range)
    if time_range == 'day':
        return [dict(entry) for entry in time_series]

    period_format = PERIOD_FORMATS[time_range]
    grouped = {}
    for entry in time_series:
        period = entry['period']
        if period != UNKNOWN_PERIOD:
            period = _parse_timestamp(period).strftime(period_format)
        bucket = grouped.get(period)
        if bucket is None:
            grouped[period] = {'period': period, 'buildCount': entry['buildCount'], 'minutes': entry['minutes']}
        else:
            bucket['buildCount'] += entry['buildCount']
            bucket['minutes'] += entry['minutes']
    return list(grouped.values())


def process_ci_metrics(bundles, time_range):
    """Aggregate pipeline bundles into a MetricsResult dict

    Args:
        bundles: List of {projectId, projectName, pipelines} dicts. None
            pipelines and projects without pipelines are skipped.
        time_range: Time-range token used for time-series bucketing

    Returns:
        dict: totalBuilds, totalMinutes, buildsByStatus, buildsPerProject,
            minutesPerProject, timeSeriesData
    """
    metrics = empty_metrics()
    daily = {}

    for bundle in bundles or []:
        if not bundle:
            continue
        pipelines = [p for p in bundle.get('pipelines') or [] if p]
        if not pipelines:
            continue

        project_id = bundle.get('projectId')
        project_name = bundle.get('projectName') or f"Project {project_id}"
        build_count = 0
        project_minutes = 0

        for pipeline in pipelines:
            minutes = pipeline.get('totalDurationMinutes') or 0
            build_count += 1
            project_minutes += minutes
            metrics['totalBuilds'] += 1
            metrics['totalMinutes'] += minutes
            metrics['buildsByStatus'][status_bucket(pipeline.get('status'))] += 1

            day = pipeline_day(pipeline)
            entry = daily.get(day)
            if entry is None:
                daily[day] = {'period': day, 'buildCount': 1, 'minutes': minutes}
            else:
                entry['buildCount'] += 1
                entry['minutes'] += minutes

        metrics['buildsPerProject'].append({
            'projectId': project_id,
            'projectName': project_name,
            'buildCount': build_count,
        })
        metrics['minutesPerProject'].append({
            'projectId': project_id,
            'projectName': project_name,
            'totalMinutes': project_minutes,
        })

    series = sorted(daily.values(), key=_period_sort_key)
    metrics['timeSeriesData'] = group_time_series_data(series, time_range)

    logger.info(f"Aggregated {metrics['totalBuilds']} builds, {metrics['totalMinutes']:.1f} minutes "
                f"across {len(metrics['buildsPerProject'])} projects")
    return metrics

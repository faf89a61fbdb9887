#!/usr/bin/env python3
"""
Project and pipeline fetching for CI metrics

Three-level fan-out with a barrier between levels:
    projects -> pipelines updated in the date range -> jobs per pipeline

Failures are isolated per item. A pipeline whose detail or job fetch fails is
dropped (never zero-filled); a project whose fetch fails degrades to an empty
pipeline list under a placeholder name.
"""

import asyncio
import logging

from ci_analytics.fanout import gather_isolated, successful_values

logger = logging.getLogger(__name__)


def placeholder_project_name(project_id):
    return f"Project {project_id}"


def sum_job_minutes(jobs):
    """Total job duration in minutes (GitLab reports seconds; null counts as 0)"""
    total = 0.0
    for job in jobs:
        if not isinstance(job, dict):
            continue
        duration = job.get('duration')
        if isinstance(duration, (int, float)) and duration > 0:
            total += duration / 60
    return total


async def fetch_projects(client, namespace=None):
    """Projects the token is a member of, optionally limited to one namespace

    Upstream errors propagate; a non-list body becomes an empty list.
    """
    logger.info(f"Fetching projects (namespace={namespace or 'all'})")
    projects = await client.get_projects(namespace=namespace)
    logger.info(f"Found {len(projects)} projects")
    return projects


async def _limited(limiter, call, *args, **kwargs):
    """Await one upstream call, holding a limiter slot only for its duration"""
    if limiter is None:
        return await call(*args, **kwargs)
    async with limiter:
        return await call(*args, **kwargs)


async def fetch_pipeline_details(client, project_id, pipeline_id, limiter=None):
    """Pipeline detail plus totalDurationMinutes summed over its jobs

    Returns:
        dict: Pipeline payload with projectId and totalDurationMinutes
        None: if either request failed
    """
    try:
        pipeline = await _limited(limiter, client.get_pipeline, project_id, pipeline_id)
        jobs = await _limited(limiter, client.get_pipeline_jobs, project_id, pipeline_id)
    except Exception as e:
        logger.warning(f"Error fetching details for pipeline {pipeline_id} (project {project_id}): {e}")
        return None

    record = dict(pipeline)
    record['projectId'] = project_id
    record['totalDurationMinutes'] = sum_job_minutes(jobs)
    return record


async def fetch_pipelines_for_project(client, project, date_range, limiter=None):
    """Bundle {projectId, projectName, pipelines} for one project"""
    project_id = project['id']
    try:
        details = await _limited(limiter, client.get_project, project_id)
        project_name = details.get('name') or project.get('name') or placeholder_project_name(project_id)

        pipelines = await _limited(
            limiter,
            client.get_pipelines,
            project_id,
            updated_after=date_range.to_dict()['startDate'],
            updated_before=date_range.to_dict()['endDate'],
        )
        logger.debug(f"Project {project_id}: {len(pipelines)} pipelines in range")

        pipeline_ids = [p.get('id') for p in pipelines if isinstance(p, dict) and p.get('id') is not None]
        outcomes = await gather_isolated(
            pipeline_ids,
            lambda pipeline_id: fetch_pipeline_details(client, project_id, pipeline_id, limiter=limiter),
            label=f"project {project_id} pipeline",
        )
        records = successful_values(outcomes)
        for record in records:
            record['projectName'] = project_name

        dropped = len(pipeline_ids) - len(records)
        if dropped:
            logger.warning(f"Project {project_id}: dropped {dropped} of {len(pipeline_ids)} pipelines after fetch errors")

        return {'projectId': project_id, 'projectName': project_name, 'pipelines': records}
    except Exception as e:
        logger.error(f"Error fetching pipelines for project {project_id}: {e}")
        return {'projectId': project_id, 'projectName': placeholder_project_name(project_id), 'pipelines': []}


async def fetch_pipelines_for_projects(client, projects, date_range, concurrency=None):
    """Fetch pipeline bundles for every project that has an id

    Args:
        client: GitLabAPIClient
        projects: Project dicts (entries without an id are dropped)
        date_range: DateRange for the updated_after/updated_before filters
        concurrency: Optional cap on upstream requests in flight at once,
            shared by every project, pipeline and job call of this fetch
            (None or 0 = unbounded)

    Returns:
        list: One bundle per valid project, in input order
    """
    if not isinstance(projects, list):
        logger.error(f"Projects is not a list: {type(projects).__name__}")
        return []

    valid_projects = [p for p in projects if isinstance(p, dict) and p.get('id')]
    logger.info(f"Processing {len(valid_projects)} valid projects out of {len(projects)} total")
    if not valid_projects:
        return []

    limiter = asyncio.Semaphore(concurrency) if concurrency else None
    outcomes = await gather_isolated(
        valid_projects,
        lambda project: fetch_pipelines_for_project(client, project, date_range, limiter=limiter),
        label='project',
    )
    bundles = []
    for outcome in outcomes:
        if outcome.ok:
            bundles.append(outcome.value)
        else:
            project_id = outcome.item['id']
            bundles.append({'projectId': project_id, 'projectName': placeholder_project_name(project_id), 'pipelines': []})
    return bundles

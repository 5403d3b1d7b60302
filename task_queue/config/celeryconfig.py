"""
Celery configuration settings
"""
import os

# Broker settings
broker_url = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
result_backend = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

# Task payloads are plain report ids and summary dicts
task_serializer = 'json'
accept_content = ['json']
result_serializer = 'json'
timezone = 'UTC'
enable_utc = True

# Every report task runs on the reports queue
task_default_queue = 'reports'
task_routes = {
    'task_queue.tasks.reports.*': {'queue': 'reports'},
}

# Beat only triggers the due-report sweep; schedules live on the saved reports
beat_schedule = {
    'run-scheduled-reports': {
        'task': 'task_queue.tasks.reports.run_scheduled_reports',
        'schedule': 60.0,
        'args': (),
    },
}

# A whole due-report batch must finish well inside an hour
task_time_limit = 3600
task_soft_time_limit = 3000

# Batch summaries are only read shortly after the run
result_expires = 60 * 60 * 24

"""
Celery configuration for the report engine task queue
"""

from celery import Celery

# Create the Celery app
app = Celery('report_engine_tasks')

# Load configuration from Python module
app.config_from_object('task_queue.config.celeryconfig')

# Auto-discover tasks from all registered apps
app.autodiscover_tasks(['task_queue.tasks'])

if __name__ == '__main__':
    app.start()

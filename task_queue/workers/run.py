#!/usr/bin/env python
"""
Start a report worker or the beat scheduler that triggers scheduled reports
"""

import argparse

from task_queue.config.celery_app import app

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def start_worker(queue='reports', concurrency=None, loglevel='INFO'):
    """Start a Celery worker consuming the report queue"""
    worker_args = [
        'worker',
        f'--queues={queue}',
        f'--loglevel={loglevel}',
        '--hostname=%h_%n',  # Hostname format: hostname_queuename
    ]
    if concurrency:
        worker_args.append(f'--concurrency={concurrency}')
    app.worker_main(worker_args)


def start_beat(loglevel='INFO', schedule_file='celerybeat-schedule.db'):
    """Start Celery Beat; it enqueues run_scheduled_reports every minute"""
    app.start(['beat', f'--loglevel={loglevel}', f'--schedule={schedule_file}'])


def main(argv=None):
    parser = argparse.ArgumentParser(description='Report engine task queue')
    subparsers = parser.add_subparsers(dest='command', required=True)

    worker_parser = subparsers.add_parser('worker', help='Start a report worker')
    worker_parser.add_argument('--queue', type=str, default='reports', help='Queue to process')
    worker_parser.add_argument('--concurrency', type=int, help='Number of worker processes')
    worker_parser.add_argument('--loglevel', type=str, default='INFO', choices=LOG_LEVELS)

    beat_parser = subparsers.add_parser('beat', help='Start the beat scheduler')
    beat_parser.add_argument('--loglevel', type=str, default='INFO', choices=LOG_LEVELS)
    beat_parser.add_argument('--schedule-file', type=str, default='celerybeat-schedule.db')

    args = parser.parse_args(argv)
    if args.command == 'worker':
        start_worker(queue=args.queue, concurrency=args.concurrency, loglevel=args.loglevel)
    else:
        start_beat(loglevel=args.loglevel, schedule_file=args.schedule_file)


if __name__ == '__main__':
    main()

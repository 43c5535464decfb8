"""
Logging configuration for the clinic deployment.

Settlement and integrity events from the ``jaspel`` logger are mirrored to an
audit file so treasurers can reconstruct who approved, rejected or reset a fee.
"""
from pathlib import Path

APP_LOGGERS = ('core', 'clinical', 'celery')
MAX_LOG_BYTES = 1024 * 1024 * 10  # 10MB


def _rotating(path, level, formatter):
    return {
        'level': level,
        'class': 'logging.handlers.RotatingFileHandler',
        'filename': path,
        'maxBytes': MAX_LOG_BYTES,
        'backupCount': 5,
        'formatter': formatter,
    }


def _logger(level='INFO', *handlers):
    return {'handlers': ['console', *handlers], 'level': level, 'propagate': False}


def get_logging_config(base_dir, region='default', use_files=True):
    """
    Build the dictConfig for a region; ``use_files=False`` keeps everything on the console
    """
    if region == 'default':
        audit_format = {'format': '{levelname} {asctime} {name} {message}', 'style': '{'}
    else:
        audit_format = {
            '()': 'pythonjsonlogger.jsonlogger.JsonFormatter',
            'format': '%(asctime)s %(name)s %(levelname)s %(message)s',
        }

    handlers = {
        'console': {
            'level': 'INFO',
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    }
    file_handlers = {'django': (), 'app': (), 'jaspel': ()}

    if use_files:
        logs_dir = Path(base_dir) / 'logs'
        logs_dir.mkdir(exist_ok=True)
        handlers['jaspel_audit'] = _rotating(logs_dir / f'{region}_jaspel_audit.log', 'WARNING', 'audit')
        handlers['error_file'] = _rotating(logs_dir / f'{region}_errors.log', 'ERROR', 'verbose')
        handlers['app_file'] = _rotating(logs_dir / f'{region}_app.log', 'INFO', 'verbose')
        file_handlers = {
            'django': ('error_file',),
            'app': ('app_file',),
            # anomalies and immutability violations
            'jaspel': ('app_file', 'jaspel_audit', 'error_file'),
        }

    loggers = {
        'django': _logger('INFO', *file_handlers['django']),
        'django.request': _logger('ERROR', *file_handlers['django']),
        'jaspel': _logger('INFO', *file_handlers['jaspel']),
    }
    for name in APP_LOGGERS:
        loggers[name] = _logger('INFO', *file_handlers['app'])

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'verbose': {
                'format': '{levelname} {asctime} {name} {process:d} {message}',
                'style': '{',
            },
            'audit': audit_format,
        },
        'handlers': handlers,
        'loggers': loggers,
    }

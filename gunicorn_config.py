# Gunicorn configuration file
bind = '0.0.0.0:5000'
workers = 2
threads = 4
# Must exceed PIPELINE_DEADLINE_SECONDS so partial results can be returned
timeout = 90
accesslog = '-'
errorlog = '-'
loglevel = 'info'

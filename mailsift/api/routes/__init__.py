"""API route handlers for Mailsift."""

from mailsift.api.routes import emails as emails
from mailsift.api.routes import health as health
from mailsift.api.routes import jobs as jobs
from mailsift.api.routes import review_queue as review_queue
from mailsift.api.routes import usage as usage

"""
GENLEDGER - Serverless entry point

Exposes the FastAPI app to AWS Lambda / Vercel style runtimes.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from mangum import Mangum

from genledger.api.server import app

handler = Mangum(app, lifespan="auto")

"""
Elastic Beanstalk Entry Point

Beanstalk looks for a WSGI callable named `application` in this file.
"""
from slabmeter.app import create_app

application = create_app()

# For local testing
if __name__ == "__main__":
    application.run(debug=True)

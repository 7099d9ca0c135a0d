"""
json_fetcher.py
This code retrieves the raw JSON data from a given URL.
It is used by the feed poller (api_poller.py) to download the emergency-dispatch
feed on every tick.

The fetcher never retries. If something goes wrong it logs the problem and
returns None, and the next tick simply tries again.
"""
import requests
import logging

logger = logging.getLogger(__name__)

# Seconds before a feed request is given up
DEFAULT_TIMEOUT = 10

def get_json(url, timeout=DEFAULT_TIMEOUT):
    """
    This functions grabs the JSON data from a URL and then parses it.
    Returns the parsed data (list, dict, ...) or None on any failure.
    """

    try:
        # Get the JSON data
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()

        # An empty body is not an error, there is just nothing to do
        if not response.text or not response.text.strip():
            logger.debug(f"Empty response body from {url}")
            return None

        # Parse the data
        data = response.json()

        logger.debug(f"Data received successfully from {url}")
        return data

    except requests.exceptions.HTTPError as httpError:
        code = httpError.response.status_code if httpError.response is not None else None

        # Handle HTTP errors
        if code == 404:
            error = f"Error 404: Unable to get JSON from {url} because page not found. \nError: {httpError}"
        elif code is not None and code >= 500:
            error = f"Error {code}: Unable to get JSON from {url} because the other server is not working. \nError: {httpError}"
        else:
            error = f"Unknown HTTP Error {code}: Unable to get JSON from {url}. \nError: {httpError}"

        logger.warning(error)
        return None

    except ValueError as jsonError:
        # If JSON data is not valid (requests' JSONDecodeError is a ValueError)
        logger.warning(f"The JSON data from {url} is not valid. \nError: {jsonError}")
        return None

    except requests.exceptions.RequestException as requestError:
        # If something wrong with the connection (includes timeouts)
        logger.warning(f"Something went wrong with the connection to {url}. \nError: {requestError}")
        return None

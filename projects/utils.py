from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


# Used by forms that accept URLs.
def normalize_url(url):
    """
    Ensures that a URL has a valid scheme (http:// or https://).

    - Checks if the input URL starts with 'http://' or 'https://'.
    - If the scheme is missing, 'https://' is prepended to the URL.
    - Returns the normalized URL.

    Args:
        url (str): The URL to normalize.

    Returns:
        str: The normalized URL with a valid scheme.
    """
    # Check if the URL starts with a valid scheme (http or https).
    if not url.startswith(("http://", "https://")):
        # If no scheme is present, prepend 'https://'.
        url = f"https://{url}"

    # Return the normalized URL.
    return url


# Used by the redirect audit modules to let Django settings override their tunables.
def get_setting(name, default):
    """
    Returns `settings.<name>` when Django settings are configured and define it,
    otherwise `default`. Lets the audit utilities run outside a Django process.
    """
    try:
        return getattr(settings, name, default)
    except ImproperlyConfigured:
        return default

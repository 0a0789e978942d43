# Provides the base Form class and form field classes for building and validating form data.
from django import forms

# Used in RedirectAuditForm to make sure the submitted value has a host.
from urllib.parse import urlparse

# Imports a custom utility function to normalize URLs, adding "https://" if missing.
from .utils import normalize_url


# Redirect Chains Audit
class RedirectAuditForm(forms.Form):
    """
    A Django form for collecting the website URL whose /redirects.json should be audited.

    Fields:
        url (str): The site (optionally with a sub-path, e.g. example.com/fr) to audit.
    """

    url = forms.CharField(
        label="Enter Website URL",
        max_length=200,
        required=True,
        widget=forms.TextInput(attrs={"placeholder": "bencritt.net"}),
        error_messages={
            "required": "Please enter a URL.",
            "invalid": "Please enter a valid URL.",
        },
    )

    def clean_url(self):
        """
        Strips whitespace, prepends 'https://' when no scheme is given and
        rejects anything without a host.
        """
        url = normalize_url(self.cleaned_data["url"].strip())

        parsed_url = urlparse(url)
        if not parsed_url.hostname or " " in url:
            raise forms.ValidationError("Please enter a valid website URL.")

        return url

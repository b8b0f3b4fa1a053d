"""Menu-bar status tool that deploys a watched directory to Netlify on change."""

__version__ = "0.1.0"

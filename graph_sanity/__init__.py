"""graph-sanity: concurrent write / read-back consistency probe for Microsoft Graph applications.

Creates many password credentials concurrently against a single application
object, waits for the directory to settle, then re-reads the application and
reports every credential that was created but is not visible.
"""

__version__ = "0.1.0"

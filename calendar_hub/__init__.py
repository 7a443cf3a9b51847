"""Calendar integration: Google and Microsoft Graph adapters, availability
aggregation and meeting-time search behind one ``CalendarService`` facade."""

__version__ = "0.1.0"

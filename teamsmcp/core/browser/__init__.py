"""Browser automation behind the HeadlessSessionDriver capability."""

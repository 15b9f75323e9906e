"""Reference extraction from free-form document text.

Modules:

  references: locate a references section and parse it into records with
      graded confidence.
  documents: size, character and time limits around PDF/DOCX text
      extractors, feeding the reference parser.
"""

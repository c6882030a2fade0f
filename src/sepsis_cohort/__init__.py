"""
Sepsis Cohort Extraction and Analysis for MIMIC-III

Two sequential stages:
1. Extraction: sample a cohort of subjects, aggregate their ICD-9 diagnosis
   codes, pull the first plausible reading of each SIRS-related variable
   (temperature, heart rate, respiratory rate, PaCO2, white blood cell
   count), merge everything into one row per subject and write it to CSV
2. Analysis: reload the CSV, label subjects as septic from their diagnosis
   codes, drop incomplete rows, and compare the variables between septic
   and non-septic subjects with descriptive statistics and plots
"""

"""
Clause Renderer Tests

Tests for context building and clause selection:
- Derived flags computed from the form
- Clause triggers (family, guardianship, mandatory shares, optional wishes)
- Article numbering and the plain-text rendition
- Residue beneficiaries (spouse, then children, then statutory heirs)
"""

import unittest
from datetime import datetime

from legacyguard.context_builder import build_context
from legacyguard.clause_renderer import (
    ClauseId, select_clauses, render_document_plan, plan_to_text, clauses_summary,
    document_plan_to_dict, to_roman
)
from legacyguard.testing import valid_will_payload

GENERATED_AT = datetime(2026, 3, 1, 9, 30, 0)


def included(payload):
    return [clause.value for clause in select_clauses(build_context(payload, GENERATED_AT))]


class TestContextBuilder(unittest.TestCase):

    def test_derived_flags(self):
        context = build_context(valid_will_payload(), GENERATED_AT)
        self.assertTrue(context.is_married)
        self.assertTrue(context.has_children)
        self.assertFalse(context.has_minor_children)
        self.assertFalse(context.has_guardianship)
        self.assertTrue(context.has_alternate_executor)
        self.assertTrue(context.requires_witnesses)
        self.assertEqual(context.witnesses_required, 2)
        self.assertEqual(context.percentage_sum, 100.0)
        self.assertEqual(context.jurisdiction_name, 'Slovak Republic')

    def test_dates_use_generation_timestamp(self):
        context = build_context(valid_will_payload(), GENERATED_AT)
        self.assertEqual(context.birth_date, '15.01.1970')
        self.assertEqual(context.generation_date, '01.03.2026')

    def test_minority_measured_at_generation(self):
        payload = valid_will_payload(
            children=[{'name': 'Lucia Novakova', 'birth_date': '2010-06-01'}],
            guardian={'name': 'Zuzana Novakova'},
        )
        self.assertTrue(build_context(payload, datetime(2026, 1, 1)).has_guardianship)
        self.assertFalse(build_context(payload, datetime(2030, 1, 1)).has_guardianship)

    def test_witnesses_dropped_for_holographic(self):
        context = build_context(valid_will_payload(will_type='holographic'), GENERATED_AT)
        self.assertFalse(context.requires_witnesses)
        self.assertEqual(context.witnesses, [])

    def test_residue_goes_to_spouse(self):
        context = build_context(valid_will_payload(), GENERATED_AT)
        self.assertEqual(context.residue_beneficiaries, ['Maria Novakova'])

    def test_residue_goes_to_children_without_spouse(self):
        payload = valid_will_payload(marital_status='widowed')
        payload['children'].append({'name': 'Jana Novakova', 'birth_date': '1998-02-03'})
        context = build_context(payload, GENERATED_AT)
        self.assertEqual(context.residue_beneficiaries, ['Peter Novak', 'Jana Novakova'])

    def test_residue_statutory_without_family(self):
        payload = valid_will_payload(marital_status='single', has_children=False)
        self.assertEqual(build_context(payload, GENERATED_AT).residue_beneficiaries, [])


class TestClauseSelection(unittest.TestCase):

    def test_full_form(self):
        self.assertEqual(included(valid_will_payload()), [
            'preamble', 'revocation', 'family', 'executor', 'distribution', 'residue',
            'mandatory_shares', 'digital_assets', 'funeral_wishes', 'signature',
        ])

    def test_minimal_form(self):
        payload = valid_will_payload(marital_status='single', has_children=False,
                                     funeral_wishes='', digital_assets=[])
        self.assertEqual(included(payload), [
            'preamble', 'revocation', 'executor', 'distribution', 'residue', 'signature',
        ])

    def test_guardianship_needs_minor_child_and_guardian(self):
        payload = valid_will_payload(
            children=[{'name': 'Lucia Novakova', 'birth_date': '2015-06-01'}],
            guardian={'name': 'Zuzana Novakova'},
        )
        self.assertIn('guardianship', included(payload))
        self.assertNotIn('guardianship', included(valid_will_payload(guardian={'name': 'Zuzana'})))

    def test_special_instructions(self):
        self.assertIn('special_instructions',
                      included(valid_will_payload(special_instructions='Keep the cottage in the family.')))

    def test_summary(self):
        summary = clauses_summary(build_context(valid_will_payload(), GENERATED_AT))
        self.assertEqual(summary['article_count'], 9)
        self.assertIn('guardianship', summary['excluded'])
        self.assertEqual(len(summary['included']) + len(summary['excluded']), len(ClauseId))


class TestDocumentPlan(unittest.TestCase):

    def setUp(self):
        self.plan = render_document_plan(build_context(valid_will_payload(), GENERATED_AT))

    def test_preamble_unnumbered_articles_sequential(self):
        self.assertEqual(self.plan[0].id, 'preamble')
        self.assertEqual(self.plan[0].numbering_level, 0)
        self.assertEqual([item.clause_number for item in self.plan[1:]], list(range(1, len(self.plan))))

    def test_text_rendition(self):
        text = plan_to_text(self.plan)
        self.assertTrue(text.startswith('LAST WILL AND TESTAMENT'))
        self.assertIn('ARTICLE I - REVOCATION OF PREVIOUS WILLS', text)
        self.assertIn('ARTICLE III - APPOINTMENT OF EXECUTOR', text)
        self.assertIn('I appoint Eva Kovacova, residing at Dlha 3, Kosice', text)
        self.assertIn('- Apartment at Hlavna 12 to Maria Novakova (60% share)', text)
        self.assertIn('I leave to Maria Novakova.', text)
        self.assertIn('in the presence of the 2 witnesses', text)
        self.assertIn('Signature of witness 2', text)

    def test_signature_blocks_named(self):
        signature = self.plan[-1]
        names = [b.content['name'] for b in signature.content_blocks if b.type == 'signature_block']
        self.assertEqual(names, ['Jan Novak', 'Anna Svobodova', 'Milan Kral'])

    def test_plan_is_deterministic(self):
        again = render_document_plan(build_context(valid_will_payload(), GENERATED_AT))
        self.assertEqual(document_plan_to_dict(self.plan), document_plan_to_dict(again))

    def test_notarized_signature_text(self):
        payload = valid_will_payload(will_type='notarized', witnesses=[], notary='Notary Office Bratislava I')
        text = plan_to_text(render_document_plan(build_context(payload, GENERATED_AT)))
        self.assertIn('before a notary (Notary Office Bratislava I)', text)
        self.assertNotIn('Signature of witness', text)

    def test_to_roman(self):
        self.assertEqual([to_roman(n) for n in (1, 4, 9, 12)], ['I', 'IV', 'IX', 'XII'])


if __name__ == '__main__':
    unittest.main()
